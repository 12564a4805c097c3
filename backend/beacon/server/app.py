"""JSON API over the beacon core, for the admin and display layers."""

from __future__ import annotations

import contextlib
import json
from datetime import timedelta
from http import HTTPStatus
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from beacon.clock import utc_now
from beacon.errors import (
    BeaconError,
    ConcurrencyConflict,
    InvalidInput,
    InvalidStateTransition,
    NotFound,
    PersistenceError,
)
from beacon.errors import ValidationError as OutcomeValidationError
from beacon.lifecycle import PlayerLifecycle
from beacon.resolver import OutcomeResolver
from beacon.scheduler import ForfeitureScheduler
from beacon.server.types import CompleteSessionRequest, StartSessionRequest
from beacon.settings import BeaconSettings
from shared.build_info import APP_VERSION, GIT_COMMIT
from shared.dal.models import SessionStatus
from shared.db import Database, SqlitePersistenceGateway
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pydantic import BaseModel
    from starlette.requests import Request

    from beacon.clock import Clock
    from shared.dal.gateway import PersistenceGateway

_MAX_REQUEST_BODY_SIZE = 64 * 1024

_ERROR_STATUS: dict[type[BeaconError], HTTPStatus] = {
    NotFound: HTTPStatus.NOT_FOUND,
    InvalidInput: HTTPStatus.UNPROCESSABLE_ENTITY,
    OutcomeValidationError: HTTPStatus.UNPROCESSABLE_ENTITY,
    InvalidStateTransition: HTTPStatus.CONFLICT,
    ConcurrencyConflict: HTTPStatus.CONFLICT,
}


async def _beacon_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    status = next(
        (code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)),
        HTTPStatus.BAD_REQUEST,
    )
    return JSONResponse({"error": str(exc), "type": type(exc).__name__}, status_code=status)


async def _persistence_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.error("storage failure while handling request", error=str(exc))
    return JSONResponse({"error": "Storage unavailable"}, status_code=HTTPStatus.SERVICE_UNAVAILABLE)


async def _read_body[M: BaseModel](request: Request, model: type[M]) -> M:
    raw_body = await request.body()
    if len(raw_body) > _MAX_REQUEST_BODY_SIZE:
        raise InvalidInput("Request body too large")
    try:
        body = json.loads(raw_body) if raw_body.strip() else {}
    except (ValueError, json.JSONDecodeError) as exc:
        raise InvalidInput("Invalid JSON body") from exc
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise InvalidInput(str(exc)) from exc


def _query_int(request: Request, name: str, default: int) -> int:
    value = request.query_params.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidInput(f"{name} must be an integer") from exc


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


async def status(request: Request) -> JSONResponse:
    scheduler: ForfeitureScheduler = request.app.state.scheduler
    return JSONResponse(
        {
            "status": "ok",
            "scheduler_running": scheduler.running,
            "sweep_in_flight": scheduler.sweep_in_flight,
            "forfeiture_window_seconds": scheduler.forfeiture_window.total_seconds(),
        },
    )


async def start_session(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    req = await _read_body(request, StartSessionRequest)
    session = await resolver.start_session(req.beacon_id, req.template_id, req.template_type, req.participants)
    return JSONResponse(session.model_dump(mode="json"), status_code=HTTPStatus.CREATED)


async def list_sessions(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    params = request.query_params
    raw_status = params.get("status")
    try:
        session_status = SessionStatus(raw_status) if raw_status else None
    except ValueError as exc:
        raise InvalidInput(f"Unknown session status {raw_status!r}") from exc
    sessions = await resolver.list_sessions(
        status=session_status,
        beacon_id=params.get("beacon_id"),
        template_id=params.get("template_id"),
        player_id=params.get("player_id"),
        limit=_query_int(request, "limit", 50),
    )
    return JSONResponse({"sessions": [s.model_dump(mode="json") for s in sessions]})


async def get_session(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    session = await resolver.get_session(request.path_params["session_id"])
    return JSONResponse(session.model_dump(mode="json"))


async def complete_session(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    req = await _read_body(request, CompleteSessionRequest)
    session = await resolver.complete_session(request.path_params["session_id"], req.outcome)
    return JSONResponse(session.model_dump(mode="json"))


async def cancel_session(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    session = await resolver.cancel_session(request.path_params["session_id"])
    return JSONResponse(session.model_dump(mode="json"))


async def get_player(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    player = await resolver.get_player(request.path_params["player_id"])
    return JSONResponse(player.model_dump(mode="json"))


async def player_history(request: Request) -> JSONResponse:
    resolver: OutcomeResolver = request.app.state.resolver
    history = await resolver.player_history(request.path_params["player_id"], limit=_query_int(request, "limit", 10))
    return JSONResponse(
        {
            "games": [
                {
                    "session": session.model_dump(mode="json"),
                    "player_outcome": str(result) if result is not None else None,
                }
                for session, result in history
            ],
        },
    )


async def reinstate_player(request: Request) -> JSONResponse:
    lifecycle: PlayerLifecycle = request.app.state.lifecycle
    player = await lifecycle.reinstate_player(request.path_params["player_id"])
    return JSONResponse(player.model_dump(mode="json"))


async def players_near_forfeit(request: Request) -> JSONResponse:
    scheduler: ForfeitureScheduler = request.app.state.scheduler
    hours = _query_int(request, "hours", 24)
    if hours < 1:
        raise InvalidInput("hours must be positive")
    warnings = await scheduler.players_near_forfeit(warning_lead=timedelta(hours=hours))
    return JSONResponse({"players": [w.model_dump(mode="json") for w in warnings]})


def create_app(
    settings: BeaconSettings | None = None,
    *,
    gateway: PersistenceGateway | None = None,
    clock: Clock = utc_now,
) -> Starlette:
    """Build the app. Without an explicit gateway, opens the SQLite database from settings."""
    if settings is None:  # pragma: no cover
        settings = BeaconSettings()

    db: Database | None = None
    if gateway is None:
        db = Database(settings.database_path)
        db.connect()
        gateway = SqlitePersistenceGateway(db)

    lifecycle = PlayerLifecycle(gateway)
    resolver = OutcomeResolver(gateway, lifecycle, clock=clock)
    scheduler = ForfeitureScheduler(
        gateway,
        forfeiture_window=settings.forfeiture_window,
        sweep_interval=settings.sweep_interval,
        lifecycle=lifecycle,
        clock=clock,
    )

    routes = [
        Route("/health", health, methods=["GET"], name="health"),
        Route("/status", status, methods=["GET"], name="status"),
        Route("/sessions", start_session, methods=["POST"], name="start_session"),
        Route("/sessions", list_sessions, methods=["GET"], name="list_sessions"),
        Route("/sessions/{session_id}", get_session, methods=["GET"], name="get_session"),
        Route("/sessions/{session_id}/complete", complete_session, methods=["POST"], name="complete_session"),
        Route("/sessions/{session_id}/cancel", cancel_session, methods=["POST"], name="cancel_session"),
        # registered before /players/{player_id} so the literal path wins
        Route("/players/near-forfeit", players_near_forfeit, methods=["GET"], name="players_near_forfeit"),
        Route("/players/{player_id}", get_player, methods=["GET"], name="get_player"),
        Route("/players/{player_id}/history", player_history, methods=["GET"], name="player_history"),
        Route("/players/{player_id}/reinstate", reinstate_player, methods=["POST"], name="reinstate_player"),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        scheduler.start()
        yield
        await scheduler.stop()
        if db is not None:
            db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            BeaconError: _beacon_error_handler,
            PersistenceError: _persistence_error_handler,
        },
    )
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    app.state.settings = settings
    app.state.gateway = gateway
    app.state.lifecycle = lifecycle
    app.state.resolver = resolver
    app.state.scheduler = scheduler

    logger.info("beacon server ready")
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory beacon.server.app:get_app."""
    settings = BeaconSettings()
    setup_logging(log_dir=settings.log_dir)
    return create_app(settings=settings)
