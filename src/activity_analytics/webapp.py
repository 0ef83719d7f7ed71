"""FastAPI application that receives browser signals and serves statistics."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import TrackerSettings
from .control import ControlChannel, ControlRequest, ControlResponse
from .engine import Engine, build_engine
from .errors import CommitError
from .signals import parse_signal

logger = logging.getLogger(__name__)


def create_app(
    *,
    engine: Optional[Engine] = None,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
) -> FastAPI:
    """Instantiate the FastAPI application around one engine."""
    resolved_engine = engine or build_engine(db_path, settings)
    channel = ControlChannel(resolved_engine)

    app = FastAPI(title="Activity Analytics", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = resolved_engine
    app.state.control = channel

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        await resolved_engine.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await resolved_engine.shutdown()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        return request.app.state.engine.status()

    @app.post("/api/signals")
    async def post_signal(
        request: Request, payload: Dict[str, Any] = Body(...)
    ) -> Dict[str, Any]:
        try:
            signal = parse_signal(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        try:
            await request.app.state.engine.submit(signal)
        except CommitError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"accepted": True, "kind": signal.kind}

    @app.post("/api/control")
    async def control(payload: ControlRequest, request: Request) -> Dict[str, Any]:
        response: ControlResponse = await request.app.state.control.handle(payload)
        return response.model_dump()

    @app.get("/api/stats")
    async def stats(request: Request) -> Dict[str, Any]:
        return await _query(request, "GET_STATS")

    @app.get("/api/today")
    async def today(request: Request) -> Dict[str, Any]:
        return await _query(request, "GET_TODAY_TIME")

    @app.get("/api/domains/{domain}")
    async def domain_stats(domain: str, request: Request) -> Dict[str, Any]:
        return await _query(request, "GET_DOMAIN_STATS", {"domain": domain})

    @app.get("/api/badge")
    def badge(request: Request) -> Dict[str, Any]:
        return request.app.state.engine.badge.last_view.to_dict()

    @app.get("/api/export")
    async def export(request: Request) -> Dict[str, Any]:
        return await _query(request, "EXPORT_DATA")

    return app


async def _query(
    request: Request, request_type: str, data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    response = await request.app.state.control.handle(
        ControlRequest(type=request_type, data=data or {})
    )
    if not response.success:
        raise HTTPException(status_code=400, detail=response.error)
    return response.data
