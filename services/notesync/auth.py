"""Sign-in flows for the notesync service: code exchange, refresh, callbacks."""

import logging
from dataclasses import dataclass
from typing import Optional, Type, TypeVar
from urllib.parse import parse_qs, urlsplit

import httpx
from pydantic import ValidationError

from services.notesync.api import (
    AuthExchangeRequest, AuthRefreshRequest, AuthTokenResponse, WireModel
)
from services.notesync.credentials import CredentialStore
from services.notesync.errors import NotesyncHTTPError

logger = logging.getLogger(__name__)

EXCHANGE_PATH = "/api/auth/exchange"
REFRESH_PATH = "/auth/refresh"

ModelT = TypeVar("ModelT", bound=WireModel)


def decode_response(response: httpx.Response, model: Type[ModelT], path: str) -> ModelT:
    """
    Validate a successful response body against a wire model.

    Raises:
        NotesyncHTTPError: If the body is not valid JSON of the expected shape
    """
    try:
        return model.model_validate_json(response.content)
    except ValidationError as e:
        logger.error(f"Unexpected response body from {path}: {e}")
        raise NotesyncHTTPError(response.status_code, response.text, path) from e


def is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


class AuthExchangeClient:
    """Trades the one-time OAuth authorization code for a token pair."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: str):
        self.http_client = http_client
        self.api_key = api_key

    async def exchange(self, code: str) -> AuthTokenResponse:
        """
        Exchange an authorization code.

        Raises:
            NotesyncHTTPError: If the service rejects the code
        """
        response = await self.http_client.post(
            EXCHANGE_PATH,
            content=AuthExchangeRequest(code=code).to_json(),
            headers={
                "Content-Type": "application/json",
                "X-API-Key": self.api_key,
            }
        )
        if not is_success(response):
            raise NotesyncHTTPError(response.status_code, response.text, EXCHANGE_PATH)
        return decode_response(response, AuthTokenResponse, EXCHANGE_PATH)


class AuthRefreshClient:
    """Obtains a new token pair from a refresh token."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: str):
        self.http_client = http_client
        self.api_key = api_key

    async def refresh(self, refresh_token: str) -> AuthTokenResponse:
        """
        Refresh the token pair.

        Raises:
            NotesyncHTTPError: If the service rejects the refresh token
        """
        response = await self.http_client.post(
            REFRESH_PATH,
            content=AuthRefreshRequest(refresh_token=refresh_token).to_json(),
            headers={
                "Content-Type": "application/json",
                "X-API-Key": self.api_key,
            }
        )
        if not is_success(response):
            raise NotesyncHTTPError(response.status_code, response.text, REFRESH_PATH)
        return decode_response(response, AuthTokenResponse, REFRESH_PATH)


@dataclass
class AuthCallbackResult:
    code: str
    state: Optional[str] = None


def parse_auth_callback(url: str, expected_host: str, expected_path: str) -> Optional[AuthCallbackResult]:
    """
    Extract the authorization code from an OAuth redirect URL.

    Returns:
        The code and optional state, or None when the URL is not our
        callback or carries no code
    """
    parts = urlsplit(url)
    if parts.hostname != expected_host or parts.path != expected_path:
        return None

    query = parse_qs(parts.query)
    code = (query.get("code") or [None])[0]
    if not code:
        return None
    state = (query.get("state") or [None])[0]
    return AuthCallbackResult(code=code, state=state)


class AuthSessionManager:
    """Tracks whether the user is signed in and drives the sign-in flow."""

    def __init__(
        self,
        credential_store: CredentialStore,
        exchange_client: AuthExchangeClient,
        login_url: str,
        callback_host: str,
        callback_path: str
    ):
        self.credential_store = credential_store
        self.exchange_client = exchange_client
        self.login_url = login_url
        self.callback_host = callback_host
        self.callback_path = callback_path

    @property
    def is_signed_in(self) -> bool:
        return self.credential_store.load_access() is not None

    async def handle_callback(self, url: str) -> bool:
        """
        Complete sign-in from an OAuth redirect URL.

        Returns:
            True if a token pair was obtained and stored, False otherwise
        """
        result = parse_auth_callback(url, self.callback_host, self.callback_path)
        if result is None:
            logger.warning("Ignoring auth callback that does not match the expected redirect")
            return False

        try:
            tokens = await self.exchange_client.exchange(result.code)
        except (NotesyncHTTPError, httpx.HTTPError) as e:
            logger.error(f"Authorization code exchange failed: {e}")
            return False

        self.credential_store.save(tokens.access_token, tokens.refresh_token)
        logger.info("Signed in to notesync")
        return True

    def sign_out(self) -> None:
        self.credential_store.clear()
        logger.info("Signed out of notesync")
