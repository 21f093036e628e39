"""Entry point for the FastAPI-powered Discogs sync service."""

from __future__ import annotations

import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .cache import SqlCacheStore
from .config import settings
from .database import Database
from .errors import (
    AuthProtocolError,
    CatalogApiError,
    OwnerBusyError,
    SyncCooldownError,
    TokenDecryptionError,
)
from .models import CredentialPair
from .services.collection import CollectionSynchronizer, ReleaseFilters
from .services.coordinator import SyncCoordinator
from .services.discogs import DiscogsClient, build_authorizer
from .services.enrichment import EnrichmentEngine
from .services.oauth import OAuthFlow
from .services.signing import encrypt_token

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

OAUTH_STATE_TTL_SECONDS = 600

app: FastAPI


@dataclass(slots=True)
class DiscogsServices:
    client: DiscogsClient
    collection: CollectionSynchronizer
    enrichment: EnrichmentEngine
    coordinator: SyncCoordinator


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    client_kwargs: dict[str, Any] = {
        "base_url": str(settings.discogs_api_url),
        "timeout": httpx.Timeout(20.0, connect=10.0),
    }
    transport = getattr(fastapi_app.state, "http_transport", None)
    if transport is not None:
        client_kwargs["transport"] = transport
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(**client_kwargs)
    )
    database = Database(settings.database_url)
    await database.create_all()

    fastapi_app.state.http_client = http_client
    fastapi_app.state.database = database
    fastapi_app.state.cache = SqlCacheStore(database.session_factory)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app(http_transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Mirror and enrich Discogs collections",
        version="1.0.0",
        lifespan=lifespan,
    )
    fastapi_app.state.http_transport = http_transport
    fastapi_app.state.discogs_oauth_states: dict[str, dict[str, Any]] = {}

    register_routes(fastapi_app)
    return fastapi_app


def build_services(
    fastapi_app: FastAPI, credentials: CredentialPair | None = None
) -> DiscogsServices:
    try:
        authorizer = build_authorizer(settings, credentials)
    except (AuthProtocolError, TokenDecryptionError) as exc:
        raise HTTPException(
            status_code=503,
            detail={"error": "discogs_credentials_missing", "description": str(exc)},
        ) from exc

    cache = fastapi_app.state.cache
    client = DiscogsClient(settings, fastapi_app.state.http_client, authorizer)
    collection = CollectionSynchronizer(settings, client, cache)
    enrichment = EnrichmentEngine(settings, collection, cache)
    coordinator = SyncCoordinator(settings, collection, enrichment, cache)
    return DiscogsServices(client, collection, enrichment, coordinator)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/discogs/login-url")
    async def discogs_login_url(request: Request) -> dict[str, str]:
        if not settings.oauth_configured:
            raise HTTPException(
                status_code=503,
                detail={
                    "error": "discogs_credentials_missing",
                    "description": (
                        "Discogs consumer key and secret must be configured on the "
                        "server to enable sign in."
                    ),
                },
            )

        _prune_expired_states(fastapi_app)
        flow = OAuthFlow(settings, fastapi_app.state.http_client)
        callback_url = str(request.url_for("discogs_oauth_callback"))
        try:
            request_token = await flow.get_request_token(callback_url)
        except AuthProtocolError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        fastapi_app.state.discogs_oauth_states[request_token.token] = {
            "secret": request_token.secret,
            "expires_at": time.time() + OAUTH_STATE_TTL_SECONDS,
        }
        return {"url": flow.get_authorization_url(request_token.token)}

    @fastapi_app.get("/api/discogs/callback", name="discogs_oauth_callback")
    async def discogs_oauth_callback(
        oauth_token: str | None = None,
        oauth_verifier: str | None = None,
    ) -> JSONResponse:
        _prune_expired_states(fastapi_app)
        if not oauth_token or not oauth_verifier:
            raise HTTPException(
                status_code=400,
                detail="Discogs did not return an oauth_token and oauth_verifier.",
            )
        state = fastapi_app.state.discogs_oauth_states.pop(oauth_token, None)
        if not state:
            raise HTTPException(
                status_code=400,
                detail="The sign-in session has expired. Please try again.",
            )
        if not settings.token_encryption_key:
            raise HTTPException(
                status_code=503,
                detail="TOKEN_ENCRYPTION_KEY must be configured to store Discogs tokens.",
            )

        flow = OAuthFlow(settings, fastapi_app.state.http_client)
        try:
            access = await flow.get_access_token(
                oauth_token, state["secret"], oauth_verifier
            )
        except AuthProtocolError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        services = build_services(fastapi_app, credentials=access)
        try:
            identity = await services.client.get_identity()
        except CatalogApiError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        return JSONResponse(
            {
                "status": "success",
                "username": identity.get("username"),
                "token": access.token,
                "encryptedSecret": encrypt_token(
                    access.secret, settings.token_encryption_key
                ),
            }
        )

    @fastapi_app.post("/api/discogs/{user_id}/sync")
    async def sync_collection(
        user_id: str, username: str | None = None, force: bool = False
    ) -> dict[str, Any]:
        services = build_services(fastapi_app)
        try:
            result = await services.coordinator.sync(user_id, username, force=force)
        except SyncCooldownError as exc:
            raise HTTPException(
                status_code=429,
                detail=str(exc),
                headers={"Retry-After": str(exc.retry_after_seconds)},
            ) from exc
        except OwnerBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (CatalogApiError, httpx.HTTPError) as exc:
            logger.warning("Discogs sync failed for %s: %s", user_id, exc)
            raise HTTPException(
                status_code=502, detail="Failed to sync collection"
            ) from exc
        return {"data": result.to_payload()}

    @fastapi_app.post("/api/discogs/{user_id}/enrich")
    async def enrich_collection(
        user_id: str, max_items: int | None = None
    ) -> dict[str, Any]:
        services = build_services(fastapi_app)
        try:
            result = await services.coordinator.enrich(user_id, max_items)
        except OwnerBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        payload = result.to_payload()
        payload["message"] = (
            f"Processed {result.processed} releases. {result.remaining} remaining."
            if result.remaining > 0
            else "Enrichment complete!"
        )
        return {"data": payload}

    @fastapi_app.get("/api/discogs/{user_id}/enrichment-status")
    async def enrichment_status(user_id: str) -> dict[str, Any]:
        services = build_services(fastapi_app)
        needed = await services.enrichment.get_enrichment_needed(user_id)
        progress = await services.enrichment.get_progress(user_id)
        payload: dict[str, Any] = needed.to_payload()
        payload["progress"] = progress.to_payload() if progress else None
        return {"data": payload}

    @fastapi_app.get("/api/discogs/{user_id}/stats")
    async def collection_stats(user_id: str) -> dict[str, Any]:
        services = build_services(fastapi_app)
        stats = await services.collection.get_collection_stats(user_id)
        if stats is None:
            raise HTTPException(status_code=404, detail="Collection not synced yet")
        return {"data": stats}

    @fastapi_app.get("/api/discogs/{user_id}/releases")
    async def collection_releases(
        user_id: str,
        genre: str | None = None,
        format: str | None = None,
        decade: str | None = None,
        style: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        services = build_services(fastapi_app)
        filters = ReleaseFilters(
            genre=genre or None,
            format=format or None,
            decade=decade or None,
            style=style or None,
            search=search or None,
        )
        releases = await services.collection.get_filtered_releases(user_id, filters)
        return {
            "data": {
                "releases": [release.to_payload() for release in releases],
                "count": len(releases),
            }
        }


def _prune_expired_states(fastapi_app: FastAPI) -> None:
    store = getattr(fastapi_app.state, "discogs_oauth_states", {})
    now = time.time()
    expired = [key for key, info in store.items() if info.get("expires_at", 0) <= now]
    for key in expired:
        store.pop(key, None)


app = create_app()
