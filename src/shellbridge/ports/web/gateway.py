"""Websocket gateway: one connection bound to one terminal session."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from ...contracts.v1 import InvalidMessage, parse_inbound, wire
from ...daemon.orchestrator import CloseRequest, ConnectionBinding, Orchestrator
from ...kernel.errors import CircuitBreakerOpen, CreationRateExceeded, TerminalError

logger = logging.getLogger("shellbridge.gateway")

CLOSE_UNAUTHORIZED = 4401
CLOSE_POLICY = 1008
CLOSE_SPAWN_FAILED = 4500


def classify_close_code(code: Optional[int]) -> str:
    """Map a websocket close code to a disconnect class."""
    if code == 1000:
        return "intentional"
    if code == 1001:
        return "reload"
    if code is not None and 4000 <= int(code) <= 4099:
        return "limit"
    return "network"


class ConnectionGateway:
    def __init__(self, orchestrator: Orchestrator, *, token: str = "") -> None:
        self.orchestrator = orchestrator
        self.token = str(token or "").strip()

    async def serve(self, websocket: WebSocket) -> None:
        q = websocket.query_params
        if self.token:
            provided = str(q.get("token") or "").strip()
            if provided != self.token:
                await websocket.close(code=CLOSE_UNAUTHORIZED)
                return

        await websocket.accept()

        project_id = str(q.get("projectId") or "").strip()
        if not project_id:
            await websocket.send_json(wire.error("projectId is required", code="invalid_request"))
            await websocket.close(code=CLOSE_POLICY)
            return
        mode = str(q.get("mode") or "normal").strip()
        if mode not in ("normal", "assistant"):
            mode = "normal"

        try:
            result = await self.orchestrator.connect(
                project_id,
                session_id=q.get("sessionId"),
                path=str(q.get("path") or ""),
                user_id=q.get("userId"),
                mode=mode,  # type: ignore[arg-type]
                rows=_int_or_none(q.get("rows")),
                cols=_int_or_none(q.get("cols")),
            )
        except (CircuitBreakerOpen, CreationRateExceeded) as e:
            await websocket.send_json(wire.error(e.message, code=e.code))
            await websocket.close(code=CLOSE_POLICY)
            return
        except TerminalError as e:
            await websocket.send_json(wire.error(e.message, code=e.code))
            await websocket.close(code=CLOSE_SPAWN_FAILED if e.code in ("spawn_exhausted", "no_shell_available") else CLOSE_POLICY)
            return
        except ValueError as e:
            await websocket.send_json(wire.error(str(e), code="invalid_request"))
            await websocket.close(code=CLOSE_POLICY)
            return

        binding = result.binding
        close_code: Optional[int] = None

        async def _pump_out() -> Optional[int]:
            while True:
                msg = await binding.outbox.get()
                if isinstance(msg, CloseRequest):
                    await websocket.close(code=msg.code, reason=msg.reason)
                    return msg.code
                await websocket.send_json(msg)

        async def _pump_in() -> Optional[int]:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect as e:
                    return int(e.code)
                if raw:
                    await self._dispatch(binding, raw)

        out_task = asyncio.create_task(_pump_out())
        in_task = asyncio.create_task(_pump_in())
        try:
            done, pending = await asyncio.wait({out_task, in_task}, return_when=asyncio.FIRST_COMPLETED)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if isinstance(exc, WebSocketDisconnect):
                    close_code = int(exc.code)
                elif exc is not None:
                    logger.warning(f"[gateway] connection error: {exc!r}", extra={"session_id": binding.session_id})
                else:
                    close_code = t.result()
        finally:
            for t in (out_task, in_task):
                if not t.done():
                    t.cancel()
            self.orchestrator.disconnect(
                binding,
                disconnect_class=classify_close_code(close_code),
                close_code=close_code,
            )

    async def _dispatch(self, binding: ConnectionBinding, raw: str) -> None:
        orch = self.orchestrator
        sid = binding.session_id
        try:
            msg = parse_inbound(raw)
        except InvalidMessage as e:
            binding.deliver(wire.error(str(e), code="invalid_message"))
            return

        try:
            if msg.type == "ping":
                orch.ping(binding)
            elif msg.type == "input":
                if orch.get_session(sid).status == "suspended":
                    binding.deliver(wire.suspended(sid, "session is suspended; input was not delivered"))
                    return
                await orch.write(sid, msg.data or "")
            elif msg.type == "resize":
                orch.resize(sid, int(msg.rows or 0), int(msg.cols or 0))
            elif msg.type == "ctrl":
                await orch.send_control(sid, str(msg.key or msg.data or ""))
            elif msg.type == "env":
                await orch.set_env(sid, str(msg.key or ""), str(msg.value or ""))
            elif msg.type == "focus":
                orch.set_focus(sid, True if msg.focused is None else bool(msg.focused))
            elif msg.type == "blur":
                orch.set_focus(sid, False)
            elif msg.type == "suspend":
                await orch.suspend_project(binding.project_id, requester=binding)
            elif msg.type == "resume":
                await orch.resume_project(binding.project_id, requester=binding)
        except TerminalError as e:
            binding.deliver(wire.error(e.message, code=e.code))
        except ValueError as e:
            binding.deliver(wire.error(str(e), code="invalid_message"))


def _int_or_none(value: Any) -> Optional[int]:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return None
    return v if 0 < v <= 1000 else None
