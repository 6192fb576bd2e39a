"""
HTTP and WebSocket API for the Bedboard provider roster.

Viewers browse the provider directory and receive live roster renders over
``/ws/roster``.  Provider administrators, identified by the ``email`` claim of
their session token, may update the bed counts of the skilled-nursing
facility they own; every committed update is echoed to all open rosters.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from bedboard.authz import AuthorizationResolver, Identity, InvalidToken, identity_from_token
from bedboard.config import get_settings
from bedboard.errors import (
    BedboardError,
    BedCountValidationError,
    EditorStateError,
    NotFound,
    StoreUnavailable,
    Unauthorized,
    Unimplemented,
    UnsupportedServiceType,
)
from bedboard.models import ALL_CATEGORIES, Capability
from bedboard.roster import compute_aggregate, render_roster
from bedboard.store import DirectoryStore, build_engine
from bedboard.workflow import BedCountWorkflow
from bedboard.ws_roster import RosterWebSocketManager

_settings = get_settings()
logging.basicConfig(level=getattr(logging, _settings.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

_ERROR_STATUS = {
    Unauthorized: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    UnsupportedServiceType: status.HTTP_422_UNPROCESSABLE_ENTITY,
    BedCountValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    EditorStateError: status.HTTP_409_CONFLICT,
    Unimplemented: status.HTTP_501_NOT_IMPLEMENTED,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    store: Optional[DirectoryStore] = getattr(app.state, "store", None)
    if store is None:
        settings = get_settings()
        store = DirectoryStore(build_engine(settings.database_url, **settings.engine_options()))
        app.state.store = store
    await store.start()
    app.state.roster_ws = RosterWebSocketManager(store, min_interval=get_settings().stream_min_interval)
    logger.info("lifespan_startup")
    try:
        yield
    finally:
        await store.close()
        logger.info("lifespan_shutdown_complete")


app = FastAPI(title="Bedboard API", lifespan=lifespan)
security = HTTPBearer(auto_error=False)


def create_token(
    subject: str,
    email: Optional[str] = None,
    *,
    expires_minutes: Optional[int] = None,
) -> str:
    """Issue a signed session token; used by tooling and tests."""

    settings = get_settings()
    payload: Dict[str, Any] = {
        "sub": subject,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode(token: str) -> Identity:
    settings = get_settings()
    return identity_from_token(token, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def get_store(request: Request) -> DirectoryStore:
    return request.app.state.store


def optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """Anonymous when no token is sent; 401 when a sent token is invalid."""

    if credentials is None:
        return Identity.anonymous()
    try:
        return _decode(credentials.credentials)
    except InvalidToken:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def require_identity(identity: Identity = Depends(optional_identity)) -> Identity:
    if identity.is_anonymous:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return identity


async def _capability_for(store: DirectoryStore, identity: Identity) -> Capability:
    return await AuthorizationResolver(store).resolve(identity)


def _status_for(exc: BedboardError) -> int:
    for cls in type(exc).__mro__:
        code = _ERROR_STATUS.get(cls)  # type: ignore[arg-type]
        if code is not None:
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(BedboardError)
async def bedboard_error_handler(request: Request, exc: BedboardError) -> JSONResponse:
    code = _status_for(exc)
    logger.info("request_rejected", path=request.url.path, code=exc.code, status=code)
    return JSONResponse(status_code=code, content={"error": exc.to_payload()})


class BedUpdateModel(BaseModel):
    beds_available: int = Field(alias="bedsAvailable")
    total_beds: int = Field(alias="totalBeds")

    model_config = ConfigDict(populate_by_name=True)


@app.get("/health")
async def health(store: DirectoryStore = Depends(get_store)) -> Dict[str, str]:
    if not store.is_ready:
        raise StoreUnavailable()
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/providers")
async def list_providers(
    category: str = Query(default=ALL_CATEGORIES),
    search: str = Query(default=""),
    store: DirectoryStore = Depends(get_store),
    identity: Identity = Depends(optional_identity),
) -> Dict[str, Any]:
    """Return the rendered roster for *category* from the current snapshot."""

    capability = await _capability_for(store, identity)
    snapshot = await store.snapshot()
    view = render_roster(snapshot, category, capability, search_term=search)
    return view.to_payload()


@app.get("/api/providers/stats")
async def provider_stats(store: DirectoryStore = Depends(get_store)) -> Dict[str, int]:
    snapshot = await store.snapshot()
    return compute_aggregate(snapshot).to_payload()


@app.get("/api/providers/{provider_id}")
async def get_provider(provider_id: str, store: DirectoryStore = Depends(get_store)) -> Dict[str, Any]:
    provider = await store.get(provider_id)
    if provider is None:
        raise NotFound(provider_id=provider_id)
    return provider.to_document()


@app.post("/api/providers/{provider_id}/beds")
async def update_beds(
    provider_id: str,
    model: BedUpdateModel,
    store: DirectoryStore = Depends(get_store),
    identity: Identity = Depends(require_identity),
) -> Dict[str, Any]:
    """Write new bed counts for the caller's own skilled-nursing facility."""

    capability = await _capability_for(store, identity)
    provider = await BedCountWorkflow(store).submit(
        capability,
        provider_id,
        model.beds_available,
        model.total_beds,
    )
    return {"success": True, "provider": provider.to_document()}


@app.get("/api/providers/{provider_id}/reviews")
async def view_reviews(provider_id: str) -> Dict[str, Any]:
    logger.info("reviews_requested", provider_id=provider_id)
    raise Unimplemented("Reviews feature coming soon!", provider_id=provider_id)


@app.post("/api/providers/{provider_id}/reviews")
async def leave_review(provider_id: str) -> Dict[str, Any]:
    logger.info("review_submission_requested", provider_id=provider_id)
    raise Unimplemented("Leave review feature coming soon!", provider_id=provider_id)


def _websocket_token(websocket: WebSocket) -> Optional[str]:
    auth_header = websocket.headers.get("Authorization") or ""
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    token = (websocket.query_params.get("token") or "").strip()
    return token or None


@app.websocket("/ws/roster")
async def ws_roster(websocket: WebSocket) -> None:
    """Live provider roster with the bed editor.

    Server messages: ``roster``, ``capability``, ``banner``, ``editor``,
    ``notice`` and ``error``.  Client messages carry an ``action``.
    """

    identity = Identity.anonymous()
    token = _websocket_token(websocket)
    if token:
        try:
            identity = _decode(token)
        except InvalidToken:
            logger.warning("roster_ws_invalid_token", path=str(websocket.url.path))
            await websocket.close(code=1008)
            return
    await websocket.app.state.roster_ws.handle(websocket, identity)


__all__ = ["app", "create_token", "lifespan"]
