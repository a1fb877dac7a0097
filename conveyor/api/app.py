"""
Content Conveyor — HTTP application
create_app() wires the REST routes and the SSE stream, and maps the error
taxonomy to status codes: not found -> 404, conflicts and invalid transitions
-> 409, budget denials -> 429. Error bodies are {code, message}.

Run with: uvicorn conveyor.api.app:app  (or `conveyor serve`)
"""

from __future__ import annotations
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conveyor.api.routes import router as rest_router
from conveyor.api.sse import router as sse_router
from conveyor.engine import PipelineEngine
from conveyor.errors import (
    AdmissionDenied,
    ConflictError,
    ConveyorError,
    InvalidTransitionError,
    ItemNotFoundError,
)
from conveyor.events.bus import EventBus, get_bus


def error_response(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"code": code, "message": message}, status_code=status)


def _status_for(exc: ConveyorError) -> int:
    if isinstance(exc, ItemNotFoundError):
        return 404
    if isinstance(exc, AdmissionDenied):
        return 409 if exc.code == "already_processing" else 429
    if isinstance(exc, (ConflictError, InvalidTransitionError)):
        return 409
    return 500


def create_app(
    engine: Optional[PipelineEngine] = None,
    bus: Optional[EventBus] = None,
) -> FastAPI:
    app = FastAPI(title="Content Conveyor", version="0.1.0")
    app.state.bus = bus or get_bus()
    app.state.engine = engine or PipelineEngine(bus=app.state.bus)

    @app.exception_handler(ConveyorError)
    async def _conveyor_error(request: Request, exc: ConveyorError) -> JSONResponse:
        return error_response(_status_for(exc), exc.code, str(exc))

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return error_response(422, "invalid_request", str(exc))

    app.include_router(rest_router)
    app.include_router(sse_router)
    return app


app = create_app()
