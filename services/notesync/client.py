"""HTTP client for the notesync service with one-shot token refresh."""

import logging
from typing import Any, Dict, Optional

import httpx

from services.notesync.api import RestoreResponse, SyncRequest, SyncResponse
from services.notesync.auth import AuthRefreshClient, decode_response, is_success
from services.notesync.credentials import CredentialStore
from services.notesync.errors import (
    NotSignedInError, NotesyncHTTPError, SessionExpiredError
)

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/sync"
NOTES_PATH = "/api/notes"

# Some deployments report expiry only in the error body. Matching on this
# text is a heuristic and may misfire if a body happens to contain it.
TOKEN_EXPIRED_MARKER = "token_expired"


def is_auth_failure(response: httpx.Response) -> bool:
    """Whether a response means the access token was rejected."""
    if response.status_code == 401:
        return True
    return response.status_code >= 400 and TOKEN_EXPIRED_MARKER in response.text


class NotesyncClient:
    """Sends sync batches and restore reads with bearer credentials.

    One logical call makes at most two attempts: if the first is rejected as
    an authentication failure, the token pair is refreshed and persisted and
    the request is retried once with the new access token. A second
    rejection, or a failed refresh, raises SessionExpiredError.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        credential_store: CredentialStore,
        refresh_client: AuthRefreshClient
    ):
        """
        Initialize notesync client.

        Args:
            http_client: HTTP client with the service base URL configured
            api_key: Static notesync API key sent as X-API-Key
            credential_store: Source of the token pair; refreshed pairs are saved here
            refresh_client: Client for the token refresh endpoint
        """
        self.http_client = http_client
        self.api_key = api_key
        self.credential_store = credential_store
        self.refresh_client = refresh_client

    async def send(self, request: SyncRequest) -> SyncResponse:
        """
        Submit a batch of operations.

        Args:
            request: Operations to apply, in order

        Returns:
            Per-note results; correlate by note id, not position

        Raises:
            NotSignedInError: If no access token is stored
            SessionExpiredError: If credentials are rejected and cannot be refreshed
            NotesyncHTTPError: For any other non-success response
        """
        response = await self._request_with_refresh(
            "POST",
            SYNC_PATH,
            content=request.to_json(),
            headers={"Content-Type": "application/json"}
        )
        result = decode_response(response, SyncResponse, SYNC_PATH)
        logger.info(f"Notesync accepted {len(request.ops)} ops, {len(result.results)} results")
        return result

    async def fetch_latest(self, limit: int) -> RestoreResponse:
        """
        Fetch the most recently modified remote notes and their media.

        Args:
            limit: Maximum number of notes to return

        Raises:
            Same as send()
        """
        response = await self._request_with_refresh(
            "GET",
            NOTES_PATH,
            params={"limit": limit}
        )
        result = decode_response(response, RestoreResponse, NOTES_PATH)
        logger.info(f"Fetched {len(result.notes)} notes and {len(result.media)} media for restore")
        return result

    async def _request_with_refresh(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        access_token = self.credential_store.load_access()
        if not access_token:
            raise NotSignedInError("Not signed in to notesync")

        response = await self._request(method, path, access_token, **kwargs)

        if is_auth_failure(response):
            logger.info(f"Access token rejected by {path} (status {response.status_code}), refreshing")
            access_token = await self._refresh_credentials()
            response = await self._request(method, path, access_token, **kwargs)

            if is_auth_failure(response):
                logger.error(f"Refreshed access token rejected by {path} (status {response.status_code})")
                raise SessionExpiredError(SessionExpiredError.user_message)

        if not is_success(response):
            logger.error(f"Notesync {method} {path} failed with status {response.status_code}")
            raise NotesyncHTTPError(response.status_code, response.text, path)

        return response

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        request_headers["X-API-Key"] = self.api_key
        request_headers["Authorization"] = f"Bearer {access_token}"
        return await self.http_client.request(method, path, headers=request_headers, **kwargs)

    async def _refresh_credentials(self) -> str:
        refresh_token = self.credential_store.load_refresh()
        if not refresh_token:
            logger.error("No refresh token stored; cannot refresh session")
            raise SessionExpiredError(SessionExpiredError.user_message)

        try:
            tokens = await self.refresh_client.refresh(refresh_token)
        except (NotesyncHTTPError, httpx.HTTPError) as e:
            logger.error(f"Token refresh failed: {e}")
            raise SessionExpiredError(SessionExpiredError.user_message) from e

        # Servers that do not rotate refresh tokens omit it from the response
        new_refresh = tokens.refresh_token or refresh_token
        self.credential_store.save(tokens.access_token, new_refresh)
        logger.info("Refreshed notesync credentials")
        return tokens.access_token
