from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ... import __version__
from ...contracts.v1 import CreateSessionRequest, FocusRequest
from ...daemon.orchestrator import Orchestrator
from ...kernel.errors import TerminalError
from ...kernel.settings import Settings, load_settings
from ...paths import ensure_home
from .gateway import ConnectionGateway

_STATUS_BY_CODE: Dict[str, int] = {
    "session_not_found": 404,
    "invalid_transition": 409,
    "project_mismatch": 409,
    "circuit_breaker_open": 429,
    "creation_rate_exceeded": 429,
    "capacity_exceeded": 503,
    "no_shell_available": 503,
    "spawn_exhausted": 503,
    "suspension_expired": 410,
}


def _error_response(code: str, message: str, status: int, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"ok": False, "error": {"code": code, "message": message, "details": details or {}}},
    )


async def _sse_events(request: Request, orch: Orchestrator) -> AsyncIterator[bytes]:
    q = orch.subscribe()
    try:
        yield b": connected\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(q.get(), timeout=15.0)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            data = json.dumps(event, ensure_ascii=False)
            yield f"event: {event['kind']}\ndata: {data}\n\n".encode("utf-8")
    finally:
        orch.unsubscribe(q)


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    cfg = settings or load_settings()
    orch = orchestrator or Orchestrator(cfg)
    gateway = ConnectionGateway(orch, token=cfg.web.token)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orch.start()
        try:
            yield
        finally:
            await orch.stop()

    app = FastAPI(title="shellbridge", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orch
    app.state.settings = cfg

    if cfg.web.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.web.cors_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        token = cfg.web.token
        if token:
            auth = str(request.headers.get("authorization") or "").strip()
            if auth != f"Bearer {token}" and str(request.query_params.get("token") or "") != token:
                return _error_response("unauthorized", "missing/invalid token", 401)
        return await call_next(request)

    @app.exception_handler(TerminalError)
    async def _terminal_error(request: Request, exc: TerminalError) -> JSONResponse:
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(exc.code, 400),
            content={"ok": False, "error": exc.to_info().model_dump()},
        )

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        return {"ok": True, "result": {"home": str(ensure_home()), "version": __version__}}

    @app.get("/api/v1/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "result": orch.stats()}

    @app.get("/api/v1/shells")
    async def shells() -> Dict[str, Any]:
        return {"ok": True, "result": orch.discovery.info()}

    @app.get("/api/v1/sessions")
    async def list_sessions(projectId: Optional[str] = None) -> Dict[str, Any]:
        return {"ok": True, "result": {"sessions": [s.to_wire() for s in orch.list_sessions(projectId)]}}

    @app.post("/api/v1/sessions")
    async def create_session(req: CreateSessionRequest) -> Any:
        try:
            session = await orch.create_session(
                req.project_id,
                req.path,
                user_id=req.user_id,
                mode=req.mode,
                session_id=req.session_id,
                rows=req.rows,
                cols=req.cols,
            )
        except ValueError as e:
            return _error_response("invalid_request", str(e), 400)
        return {"ok": True, "result": {"session": session.to_wire()}}

    @app.get("/api/v1/sessions/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        return {"ok": True, "result": {"session": orch.get_session(session_id).to_wire()}}

    @app.delete("/api/v1/sessions/{session_id}")
    async def close_session(session_id: str) -> Dict[str, Any]:
        orch.get_session(session_id)
        return {"ok": True, "result": {"closed": orch.close_session(session_id, reason="client_closed")}}

    @app.post("/api/v1/sessions/{session_id}/focus")
    async def focus_session(session_id: str, req: FocusRequest) -> Dict[str, Any]:
        unfocused = orch.set_focus(session_id, req.focused)
        session = orch.get_session(session_id)
        return {"ok": True, "result": {"session": session.to_wire(), "unfocused": unfocused}}

    @app.post("/api/v1/projects/{project_id}/suspend")
    async def suspend_project(project_id: str) -> Dict[str, Any]:
        suspended = await orch.suspend_project(project_id)
        return {"ok": True, "result": {"suspended": [s.id for s in suspended]}}

    @app.post("/api/v1/projects/{project_id}/resume")
    async def resume_project(project_id: str) -> Dict[str, Any]:
        result = await orch.resume_project(project_id)
        return {
            "ok": True,
            "result": {
                "resumed": [{"sessionId": s.id, "buffered": len(buf)} for s, buf in result.resumed],
                "expired": [s.id for s in result.expired],
            },
        }

    @app.delete("/api/v1/projects/{project_id}")
    async def close_project(project_id: str) -> Dict[str, Any]:
        return {"ok": True, "result": {"closed": orch.close_project(project_id)}}

    @app.get("/api/v1/events")
    async def events(request: Request) -> StreamingResponse:
        return StreamingResponse(_sse_events(request, orch), media_type="text/event-stream")

    @app.websocket("/ws/terminal")
    async def terminal(websocket: WebSocket) -> None:
        await gateway.serve(websocket)

    return app
