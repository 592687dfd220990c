"""FastAPI application exposing the match endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .cache import CacheTTLs, RepositoryCache
from .config import Settings
from .errors import MatchError
from .repository import MatchRepository
from .schema import SchemaError, utcnow
from .service import MatchService
from .store import KeyValueStore, create_store

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

FidField = Union[int, str, None]


# ---------- Request models ----------


class CreateMatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_id: Union[str, int, None] = Field(default=None, alias="matchId")
    player1_fid: FidField = Field(default=None, alias="player1Fid")
    rules: Optional[Dict[str, Any]] = None
    visibility: str = "public"


class AcceptMatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_id: Union[str, int, None] = Field(default=None, alias="matchId")
    player2_fid: FidField = Field(default=None, alias="player2Fid")


class MoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_id: Union[str, int, None] = Field(default=None, alias="matchId")
    player_fid: FidField = Field(default=None, alias="playerFid")
    cell_index: Optional[int] = Field(default=None, alias="cellIndex")


class CheckTimeoutsRequest(BaseModel):
    fid: FidField = None


# ---------- Middleware and error handlers ----------


async def cors_and_logging(request: Request, call_next: Callable[..., Any]) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)
    try:
        response = await call_next(request)
    except Exception:
        logger.error("[500] %s %s (exception)", request.method, request.url.path)
        raise
    response.headers.update(CORS_HEADERS)
    if response.status_code >= 500:
        logger.error("[%s] %s %s", response.status_code, request.method, request.url.path)
    return response


async def match_error_handler(request: Request, exc: MatchError) -> JSONResponse:
    logger.debug("%s %s rejected: %s (%s)", request.method, request.url.path, exc.error, exc.reason)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def schema_error_handler(request: Request, exc: SchemaError) -> JSONResponse:
    logger.warning("Refusing to persist invalid match: %s", exc)
    return JSONResponse(status_code=400, content={"error": str(exc), "reason": "invalid_match"})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
        message = f"{field or 'request'}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message, "reason": "invalid_request"})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"}, headers=CORS_HEADERS)


# ---------- Routes ----------


def get_service(request: Request) -> MatchService:
    return request.app.state.service


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/matches/create", status_code=status.HTTP_201_CREATED)
    def create_match(
        request: CreateMatchRequest, service: MatchService = Depends(get_service)
    ) -> Dict[str, Any]:
        return service.create(
            request.match_id,
            request.player1_fid,
            rules=request.rules,
            visibility=request.visibility,
        )

    @app.post("/api/matches/accept")
    def accept_match(
        request: AcceptMatchRequest, service: MatchService = Depends(get_service)
    ) -> Dict[str, Any]:
        return service.accept(request.match_id, request.player2_fid)

    @app.post("/api/matches/move")
    def make_move(request: MoveRequest, service: MatchService = Depends(get_service)) -> Dict[str, Any]:
        return service.move(request.match_id, request.player_fid, request.cell_index)

    @app.get("/api/matches/get")
    def get_match(
        match_id: Optional[str] = Query(default=None, alias="matchId"),
        service: MatchService = Depends(get_service),
    ) -> Dict[str, Any]:
        return service.get(match_id)

    @app.get("/api/matches/list")
    def list_matches(
        fid: Optional[str] = None, service: MatchService = Depends(get_service)
    ) -> List[Dict[str, Any]]:
        return service.list_matches(fid)

    @app.post("/api/matches/check-timeouts")
    def check_timeouts(
        request: CheckTimeoutsRequest, service: MatchService = Depends(get_service)
    ) -> Dict[str, Any]:
        return service.check_timeouts(request.fid)

    @app.get("/api/matches/leaderboard")
    def leaderboard(service: MatchService = Depends(get_service)) -> Dict[str, Any]:
        return service.leaderboard()

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        return {"ok": True, "store": request.app.state.store.name, "version": __version__}


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build an application around ``store``, or the store configured in ``settings``."""

    settings = settings or Settings.from_env()
    store = store if store is not None else create_store(settings)
    cache = RepositoryCache(CacheTTLs(match=settings.match_cache_ttl))
    repository = MatchRepository(store, cache, clock=clock)

    app = FastAPI(
        title="xomatch",
        description="Asynchronous two-player tic-tac-toe matches",
        version=__version__,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.service = MatchService(repository, settings, clock=clock)

    app.middleware("http")(cors_and_logging)
    app.add_exception_handler(MatchError, match_error_handler)
    app.add_exception_handler(SchemaError, schema_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    _register_routes(app)
    return app


app = create_app()
