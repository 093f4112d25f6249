"""Local file storage for note images and audio recordings."""

import hashlib
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class MissingMediaError(FileNotFoundError):
    """Raised when a media path does not resolve to a stored file."""


def sha256_file(path: Union[str, Path]) -> str:
    """Hex SHA-256 of a file's content, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes to a sibling temp file, fsync it and rename it into place."""
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class MediaStore:
    """Stores binary media under opaque path strings inside one folder."""

    def __init__(self, root: Union[str, Path], folder_name: str, default_extension: str):
        """
        Initialize media store.

        Args:
            root: Data directory the folder lives in
            folder_name: Folder for this kind of media (e.g. "Images")
            default_extension: Extension given to generated file names
        """
        self.base_path = Path(root) / folder_name
        self.default_extension = default_extension.lstrip(".")
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._checksum_index: Optional[Dict[str, str]] = None

    def save(self, blobs: Iterable[bytes]) -> List[str]:
        """
        Persist each blob under a freshly generated name.

        Args:
            blobs: Raw media payloads

        Returns:
            Store paths of the saved blobs, in input order
        """
        paths = []
        for data in blobs:
            filename = f"{uuid.uuid4()}.{self.default_extension}"
            paths.append(self.write(filename, data))
        return paths

    def write(self, filename: str, data: bytes) -> str:
        """Persist a blob under the given file name and return its store path."""
        target = self.base_path / Path(filename).name
        write_atomic(target, data)
        if self._checksum_index is not None:
            self._checksum_index[hashlib.sha256(data).hexdigest()] = target.name
        logger.debug(f"Stored media {target.name} ({len(data)} bytes)")
        return target.name

    def _locate(self, path: str) -> Optional[Path]:
        # Store paths are bare file names inside base_path
        if not path or path in (".", "..") or Path(path).name != path:
            return None
        url = self.base_path / path
        if url.resolve().parent != self.base_path.resolve():
            return None
        return url

    def url_for(self, path: str) -> Path:
        """
        Resolve a store path to a file on disk.

        Raises:
            MissingMediaError: If no file is stored under that path, or the
                path is not a bare name inside the store
        """
        url = self._locate(path)
        if url is None or not url.is_file():
            raise MissingMediaError(f"Media file not found: {path}")
        return url

    def load(self, path: str) -> bytes:
        """Read a stored blob."""
        return self.url_for(path).read_bytes()

    def exists(self, path: str) -> bool:
        url = self._locate(path)
        return url is not None and url.is_file()

    def delete(self, paths: Iterable[str]) -> None:
        """Delete stored blobs; paths that no longer exist are ignored."""
        for path in paths:
            url = self._locate(path)
            if url is None:
                logger.warning(f"Refusing to delete media outside the store: {path!r}")
                continue
            if url.is_file():
                url.unlink()
                logger.debug(f"Deleted media {path}")
            if self._checksum_index is not None:
                for checksum, name in list(self._checksum_index.items()):
                    if name == path:
                        del self._checksum_index[checksum]

    def find_by_checksum(self, checksum: str) -> Optional[str]:
        """
        Find a stored blob whose SHA-256 equals the given checksum.

        The folder is hashed once and the index kept current by write/delete.

        Returns:
            Store path of the matching blob or None
        """
        if self._checksum_index is None:
            self._checksum_index = {}
            for entry in sorted(self.base_path.iterdir()):
                if entry.is_file() and not entry.name.endswith(".tmp"):
                    self._checksum_index.setdefault(sha256_file(entry), entry.name)

        path = self._checksum_index.get(checksum)
        if path is not None and not self.exists(path):
            del self._checksum_index[checksum]
            return None
        return path
