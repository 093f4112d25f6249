"""Tests for the local media store."""

import hashlib

import pytest

from shared.content_store import MediaStore, MissingMediaError, sha256_file, write_atomic


@pytest.fixture
def image_store(tmp_path):
    return MediaStore(tmp_path, "Images", "jpg")


def test_save_returns_paths_in_order(image_store):
    paths = image_store.save([b"one", b"two"])

    assert len(paths) == 2
    assert all(path.endswith(".jpg") for path in paths)
    assert image_store.load(paths[0]) == b"one"
    assert image_store.load(paths[1]) == b"two"


def test_url_for_missing_file_raises(image_store):
    with pytest.raises(MissingMediaError):
        image_store.url_for("missing.jpg")

    # Still a FileNotFoundError for callers handling plain I/O errors
    with pytest.raises(FileNotFoundError):
        image_store.load("missing.jpg")


def test_delete_ignores_missing_paths(image_store):
    [path] = image_store.save([b"data"])

    image_store.delete([path, "never-existed.jpg"])
    image_store.delete([path])

    assert not image_store.exists(path)


def test_find_by_checksum_sees_existing_and_new_files(image_store):
    [existing] = image_store.save([b"already here"])

    assert image_store.find_by_checksum(hashlib.sha256(b"already here").hexdigest()) == existing
    assert image_store.find_by_checksum(hashlib.sha256(b"new").hexdigest()) is None

    written = image_store.write("new.jpg", b"new")
    assert image_store.find_by_checksum(hashlib.sha256(b"new").hexdigest()) == written


def test_find_by_checksum_forgets_deleted_files(image_store):
    [path] = image_store.save([b"gone soon"])
    checksum = hashlib.sha256(b"gone soon").hexdigest()
    assert image_store.find_by_checksum(checksum) == path

    image_store.delete([path])

    assert image_store.find_by_checksum(checksum) is None


def test_write_strips_directories_from_filename(image_store):
    path = image_store.write("../escape.jpg", b"x")

    assert path == "escape.jpg"
    assert (image_store.base_path / "escape.jpg").exists()


def test_write_atomic_leaves_no_temp_files(tmp_path):
    target = tmp_path / "blob.bin"

    write_atomic(target, b"payload")

    assert target.read_bytes() == b"payload"
    assert [p.name for p in tmp_path.iterdir()] == ["blob.bin"]


def test_sha256_file_matches_hashlib(tmp_path):
    data = b"x" * 200_000
    path = tmp_path / "big.bin"
    path.write_bytes(data)

    assert sha256_file(path) == hashlib.sha256(data).hexdigest()


@pytest.mark.parametrize("path", ["../outside.db", "nested/file.jpg", "..", ".", ""])
def test_paths_outside_the_store_are_rejected(tmp_path, image_store, path):
    outside = tmp_path / "outside.db"
    outside.write_bytes(b"database")

    assert not image_store.exists(path)
    with pytest.raises(MissingMediaError):
        image_store.url_for(path)

    image_store.delete([path])

    assert outside.read_bytes() == b"database"


def test_symlink_leaving_the_store_is_rejected(tmp_path, image_store):
    secret = tmp_path / "secret.txt"
    secret.write_bytes(b"secret")
    (image_store.base_path / "link.jpg").symlink_to(secret)

    with pytest.raises(MissingMediaError):
        image_store.load("link.jpg")
