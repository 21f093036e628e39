"""Rate-governed client for the Discogs HTTP API.

Every provider call goes through :meth:`DiscogsClient.request`, which paces
requests against the quota, re-issues requests rejected with 429 after the
provider's ``Retry-After`` delay and raises :class:`CatalogApiError` for any
other failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol
from urllib.parse import quote

import httpx

from ..config import Settings
from ..errors import AuthProtocolError, CatalogApiError, RateLimitExceededError
from ..models import CredentialPair
from ..utils import coerce_int
from .rate_limit import LocalRateLimiter, RateLimiter, RateLimitState, SleepFunc
from .signing import build_authorization_header, build_oauth_params, decrypt_token, sign

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/vnd.discogs.v2.discogs+json"
DEFAULT_RETRY_AFTER_SECONDS = 60


class Authorizer(Protocol):
    """Produces the ``Authorization`` header for one outgoing request."""

    def authorization(
        self, method: str, url: str, params: Mapping[str, str]
    ) -> str: ...


class TokenAuthorizer:
    """Personal access token mode."""

    def __init__(self, access_token: str):
        self._access_token = access_token

    def authorization(
        self, method: str, url: str, params: Mapping[str, str]
    ) -> str:
        return f"Discogs token={self._access_token}"


class OAuthAuthorizer:
    """Signs each request with the consumer and access credentials."""

    def __init__(
        self, consumer_key: str, consumer_secret: str, credentials: CredentialPair
    ):
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._credentials = credentials

    def authorization(
        self, method: str, url: str, params: Mapping[str, str]
    ) -> str:
        oauth_params = build_oauth_params(
            self._consumer_key, oauth_token=self._credentials.token
        )
        # Query parameters are part of the signature base string.
        signed = {**params, **oauth_params}
        oauth_params["oauth_signature"] = sign(
            method,
            url,
            signed,
            self._consumer_secret,
            self._credentials.secret,
        )
        return build_authorization_header(oauth_params)


def build_authorizer(
    settings: Settings, credentials: CredentialPair | None = None
) -> Authorizer:
    """Pick OAuth signing when full delegated credentials exist, else a token.

    ``credentials`` carries a plaintext access secret. Without it, the access
    token pair is read from settings, where the secret is stored encrypted.
    """

    if settings.oauth_configured:
        consumer_key: str = settings.discogs_consumer_key  # type: ignore[assignment]
        consumer_secret: str = settings.discogs_consumer_secret  # type: ignore[assignment]
        if credentials is not None:
            return OAuthAuthorizer(consumer_key, consumer_secret, credentials)
        if (
            settings.discogs_oauth_token
            and settings.discogs_access_token_secret
            and settings.token_encryption_key
        ):
            secret = decrypt_token(
                settings.discogs_access_token_secret, settings.token_encryption_key
            )
            return OAuthAuthorizer(
                consumer_key,
                consumer_secret,
                CredentialPair(token=settings.discogs_oauth_token, secret=secret),
            )
    if settings.discogs_access_token:
        return TokenAuthorizer(settings.discogs_access_token)
    raise AuthProtocolError("No Discogs credentials configured")


class DiscogsClient:
    """Single chokepoint for all authenticated Discogs calls."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        authorizer: Authorizer,
        *,
        rate_limiter: RateLimiter | None = None,
        sleep: SleepFunc = asyncio.sleep,
        max_rate_limit_retries: int | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._authorizer = authorizer
        self._sleep = sleep
        self._rate_limiter: RateLimiter = rate_limiter or LocalRateLimiter(sleep=sleep)
        self._base_url = str(settings.discogs_api_url).rstrip("/")
        self._max_retries = (
            settings.max_rate_limit_retries
            if max_rate_limit_retries is None
            else max_rate_limit_retries
        )

    @property
    def rate_limit_state(self) -> RateLimitState:
        return self._rate_limiter.state

    def _headers(self, method: str, url: str, params: Mapping[str, str]) -> dict[str, str]:
        return {
            "Authorization": self._authorizer.authorization(method, url, params),
            "User-Agent": self._settings.discogs_user_agent,
            "Accept": ACCEPT_HEADER,
        }

    async def request(
        self,
        path: str,
        *,
        method: str = "GET",
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        skip_rate_limit: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body."""

        url = f"{self._base_url}{path}"
        query = {key: str(value) for key, value in (params or {}).items()}
        rate_limited = 0

        while True:
            if not skip_rate_limit:
                await self._rate_limiter.acquire()

            headers = self._headers(method, url, query)
            if json is not None:
                headers["Content-Type"] = "application/json"
            response = await self._client.request(
                method,
                url,
                params=query or None,
                json=json,
                headers=headers,
            )
            self._rate_limiter.on_response(response.headers)

            if response.status_code == 429:
                rate_limited += 1
                if rate_limited > self._max_retries:
                    logger.warning(
                        "Discogs kept rate limiting %s %s after %s retries",
                        method,
                        path,
                        self._max_retries,
                    )
                    raise RateLimitExceededError(rate_limited, response.text)
                retry_after = coerce_int(
                    response.headers.get("Retry-After"),
                    default=DEFAULT_RETRY_AFTER_SECONDS,
                )
                logger.warning(
                    "Discogs rate limited. Waiting %ss before retry.", retry_after
                )
                await self._sleep(max(retry_after or 0, 0))
                continue

            if not response.is_success:
                raise CatalogApiError(response.status_code, response.text)

            return response.json()

    async def get_identity(self) -> dict[str, Any]:
        """Return the identity of the authenticated user."""

        return await self.request("/oauth/identity")

    async def get_collection_page(
        self, username: str, page: int = 1, per_page: int = 100
    ) -> dict[str, Any]:
        return await self.request(
            f"/users/{quote(username, safe='')}/collection/folders/0/releases",
            params={
                "page": page,
                "per_page": per_page,
                "sort": "added",
                "sort_order": "desc",
            },
        )

    async def get_master(self, master_id: int) -> dict[str, Any]:
        return await self.request(f"/masters/{master_id}")
