"""Three-legged OAuth 1.0a handshake with Discogs."""

from __future__ import annotations

import logging
from urllib.parse import parse_qs, urlencode

import httpx

from ..config import Settings
from ..errors import AuthProtocolError
from ..models import CredentialPair
from .signing import build_authorization_header, build_oauth_params, sign

logger = logging.getLogger(__name__)


class OAuthFlow:
    """Runs the request-token, authorize and access-token steps.

    Failures are surfaced with the provider's raw status and body and are
    never retried.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.oauth_configured:
            raise AuthProtocolError("Discogs consumer key and secret are not configured")
        self._settings = settings
        self._client = http_client
        self._consumer_key: str = settings.discogs_consumer_key  # type: ignore[assignment]
        self._consumer_secret: str = settings.discogs_consumer_secret  # type: ignore[assignment]

    async def get_request_token(self, callback_url: str) -> CredentialPair:
        """Step 1: obtain a temporary request token."""

        url = self._settings.discogs_request_token_url
        params = build_oauth_params(self._consumer_key, oauth_callback=callback_url)
        params["oauth_signature"] = sign(
            "POST", url, params, self._consumer_secret, ""
        )
        body = await self._post(url, params, step="request token")
        return self._parse_pair(body, step="request token")

    def get_authorization_url(self, request_token: str) -> str:
        """Step 2: the provider-hosted consent page for ``request_token``."""

        query = urlencode({"oauth_token": request_token})
        return f"{self._settings.discogs_authorize_url}?{query}"

    async def get_access_token(
        self, request_token: str, request_secret: str, verifier: str
    ) -> CredentialPair:
        """Step 3: exchange the authorized request token for an access token.

        The returned secret is plaintext; callers must pass it through
        :func:`~recordsync.services.signing.encrypt_token` before storing it.
        """

        url = self._settings.discogs_access_token_url
        params = build_oauth_params(
            self._consumer_key,
            oauth_token=request_token,
            oauth_verifier=verifier,
        )
        params["oauth_signature"] = sign(
            "POST", url, params, self._consumer_secret, request_secret
        )
        body = await self._post(url, params, step="access token")
        return self._parse_pair(body, step="access token")

    async def _post(self, url: str, params: dict[str, str], *, step: str) -> str:
        headers = {
            "Authorization": build_authorization_header(params),
            "User-Agent": self._settings.discogs_user_agent,
            "Content-Type": "application/x-www-form-urlencoded",
        }
        response = await self._client.post(url, headers=headers)
        if response.status_code >= 400:
            logger.warning(
                "Discogs rejected the %s request with status %s",
                step,
                response.status_code,
            )
            raise AuthProtocolError(
                f"Failed to get {step}: {response.status_code} {response.text}",
                status=response.status_code,
                body=response.text,
            )
        return response.text

    @staticmethod
    def _parse_pair(body: str, *, step: str) -> CredentialPair:
        values = parse_qs(body)
        token = (values.get("oauth_token") or [""])[0]
        secret = (values.get("oauth_token_secret") or [""])[0]
        if not token or not secret:
            raise AuthProtocolError(
                f"Invalid response from Discogs: missing {step} or secret",
                body=body,
            )
        return CredentialPair(token=token, secret=secret)
