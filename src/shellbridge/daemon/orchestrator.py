"""Session orchestrator.

Composition root for the terminal engine: owns the registry, the process
bridge, shell discovery, the health monitor and the connection bindings.
Every public operation of the engine goes through here; the ports (HTTP,
websocket, CLI) never touch the collaborators directly.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..contracts.v1 import Session, SessionMode
from ..contracts.v1 import wire
from ..kernel.errors import SessionNotFound, SuspensionExpired, TerminalError
from ..kernel.registry import LifecycleEvent, ResumeResult, SessionRegistry
from ..kernel.settings import Settings, TerminalSettings
from ..kernel.sinks import LoggingSink, make_sink
from ..runners.shells import ShellDiscovery
from ..util.time import Clock, monotonic
from .bridge import CONTROL_KEYS, ProcessBridge, ProcessHandle
from .health import HealthMonitor

logger = logging.getLogger("shellbridge.orchestrator")

_ENV_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# Close codes the orchestrator itself asks the gateway to use.
CLOSE_NORMAL = 1000
CLOSE_SESSION_ENDED = 4001
CLOSE_OUTBOX_OVERFLOW = 4008
CLOSE_SUPERSEDED = 4009


@dataclass(frozen=True)
class CloseRequest:
    code: int
    reason: str = ""


Outbound = Union[Dict[str, Any], CloseRequest]


@dataclass
class ConnectionBinding:
    """The link between one live websocket and one session."""

    session_id: str
    project_id: str
    max_messages: int = 2000
    connected: bool = True
    last_ping: float = 0.0
    outbox: "asyncio.Queue[Outbound]" = field(default_factory=asyncio.Queue)
    closing: bool = False

    def deliver(self, msg: Dict[str, Any]) -> bool:
        if self.closing or not self.connected:
            return False
        if self.outbox.qsize() >= self.max_messages:
            logger.warning(
                f"[orchestrator] outbox overflow ({self.max_messages}), dropping connection",
                extra={"session_id": self.session_id, "op": "overflow"},
            )
            self.request_close(CLOSE_OUTBOX_OVERFLOW, "outbox overflow")
            return False
        self.outbox.put_nowait(msg)
        return True

    def request_close(self, code: int, reason: str = "") -> None:
        if self.closing:
            return
        self.closing = True
        self.outbox.put_nowait(CloseRequest(code=code, reason=reason))


@dataclass
class ConnectResult:
    session: Session
    handle: ProcessHandle
    binding: ConnectionBinding
    reconnected: bool


class Orchestrator:
    def __init__(
        self,
        settings: Union[Settings, TerminalSettings, None] = None,
        *,
        discovery: Optional[ShellDiscovery] = None,
        registry: Optional[SessionRegistry] = None,
        bridge: Optional[ProcessBridge] = None,
        health: Optional[HealthMonitor] = None,
        sink: Optional[LoggingSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if isinstance(settings, Settings):
            settings = settings.terminal
        self.settings: TerminalSettings = settings or TerminalSettings()
        cfg = self.settings
        self._clock = clock or monotonic
        self.discovery = discovery or ShellDiscovery(
            probe_timeout=cfg.shell_probe_timeout_seconds,
            liveness_timeout=cfg.spawn_liveness_timeout_seconds,
        )
        self.registry = registry or SessionRegistry(cfg, clock=self._clock)
        self.registry.bind_observer(self._on_registry_event)
        self.bridge = bridge or ProcessBridge(self.discovery, cfg)
        self.health = health or HealthMonitor(
            self.registry,
            tiers=cfg.memory_tiers,
            interval=cfg.health_interval_seconds,
        )
        self.sink = sink if sink is not None else make_sink(cfg.command_log, record_output=cfg.command_log_output)
        self._bindings: Dict[str, ConnectionBinding] = {}
        self._keepalive: Dict[str, float] = {}
        self._windows: Dict[str, float] = {}
        self._subscribers: Set["asyncio.Queue[Dict[str, Any]]"] = set()
        self._tasks: List["asyncio.Task[None]"] = []
        self._pending: Set["asyncio.Task[Any]"] = set()
        self._started = False

    # ------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await asyncio.to_thread(self.discovery.initialize)
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name="shellbridge-sweep"))
        if self.health.interval > 0:
            self._tasks.append(asyncio.create_task(self.health.run(), name="shellbridge-health"))
        logger.info("[orchestrator] started")

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.registry.close_all(reason="shutdown")
        await self.bridge.close_all()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self.sink.close()
        self._started = False
        logger.info("[orchestrator] stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, self.settings.sweep_interval_seconds))
            try:
                self.sweep()
            except Exception:
                logger.exception("[orchestrator] sweep failed")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ---------------------------------------------------------------- events

    def subscribe(self, maxsize: int = 1000) -> "asyncio.Queue[Dict[str, Any]]":
        q: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[Dict[str, Any]]") -> None:
        self._subscribers.discard(q)

    def _publish(self, kind: str, session: Session, data: Optional[Dict[str, Any]] = None) -> None:
        if not self._subscribers:
            return
        event = {"kind": kind, "session": session.to_wire(), "data": dict(data or {})}
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"[orchestrator] subscriber queue full, dropping {kind}")

    def _on_registry_event(self, event: LifecycleEvent) -> None:
        s = event.session
        self._publish(event.kind, s, event.data)

        if event.kind == "session.closed":
            self._keepalive.pop(s.id, None)
            self._windows.pop(s.id, None)
            reason = str(event.data.get("reason") or "closed")
            handle = self.bridge.detach(s.id)
            if handle is not None:
                self._spawn(self.bridge.close(handle))
            binding = self._bindings.pop(s.id, None)
            if binding is not None:
                if reason == "exited":
                    binding.request_close(CLOSE_NORMAL, "process exited")
                elif reason == "suspension_expired":
                    err = SuspensionExpired(f"session {s.id} was suspended too long and has been closed")
                    binding.deliver(wire.error(err.message, code=err.code))
                    binding.request_close(CLOSE_SESSION_ENDED, reason)
                else:
                    binding.deliver(wire.error(f"session closed: {reason}", code="session_closed"))
                    binding.request_close(CLOSE_SESSION_ENDED, reason)
            self.sink.session_ended(s.id, reason=reason)
        elif event.kind == "session.focus_changed":
            msg = wire.focus_update(s.id, bool(event.data.get("focused")), list(event.data.get("all_focused") or []))
            for b in self._project_bindings(s.project_id):
                b.deliver(msg)
    def _project_bindings(self, project_id: str) -> List[ConnectionBinding]:
        return [b for b in self._bindings.values() if b.project_id == project_id and b.connected]

    # ---------------------------------------------------------------- output

    def _route_output(self, session_id: str, text: str) -> None:
        self.sink.record_output(session_id, text)
        if self.registry.buffer_suspended_output(session_id, text):
            return
        binding = self._bindings.get(session_id)
        if binding is not None and binding.connected:
            binding.deliver(wire.stream(text, focused=self.registry.is_focused(session_id)))

    def _on_process_exit(self, session_id: str, code: Optional[int]) -> None:
        binding = self._bindings.get(session_id)
        if binding is not None:
            binding.deliver(wire.exit_(code))
        self.registry.close_session(session_id, reason="exited")

    # -------------------------------------------------------------- sessions

    async def create_session(
        self,
        project_id: str,
        path: str = "",
        *,
        user_id: Optional[str] = None,
        mode: SessionMode = "normal",
        session_id: Optional[str] = None,
        rows: Optional[int] = None,
        cols: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Session:
        session, _ = await self._create(
            project_id, path, user_id=user_id, mode=mode, session_id=session_id, rows=rows, cols=cols, env=env
        )
        return session

    async def _create(
        self,
        project_id: str,
        path: str,
        *,
        user_id: Optional[str],
        mode: SessionMode,
        session_id: Optional[str],
        rows: Optional[int],
        cols: Optional[int],
        env: Optional[Dict[str, str]] = None,
    ) -> Tuple[Session, ProcessHandle]:
        session = self.registry.create_session(project_id, path, user_id=user_id, mode=mode, session_id=session_id)
        try:
            handle = await self.bridge.open(session, working_dir=path, env=env, rows=rows, cols=cols)
        except TerminalError as e:
            logger.error(
                f"[orchestrator] spawn failed: {e.message}",
                extra={"session_id": session.id, "project_id": project_id, "code": e.code},
            )
            if session.is_live:
                self.registry.set_status(session.id, "error", reason=e.code)
                self.registry.close_session(session.id, reason="spawn_failed")
            raise

        if not session.is_live:
            # Evicted while the shell was starting.
            await self.bridge.close(handle)
            raise SessionNotFound(session.id)

        self.registry.set_path(session.id, str(handle.cwd))
        self.registry.set_status(session.id, "active", reason="spawned")
        self.bridge.on_data(handle, lambda text, sid=session.id: self._route_output(sid, text))
        self.bridge.on_exit(handle, lambda code, sid=session.id: self._on_process_exit(sid, code))
        self._windows[session.id] = self.settings.keepalive_intentional_seconds
        self._keepalive[session.id] = self._clock() + self.settings.keepalive_intentional_seconds
        self.sink.session_started(session.id, session.project_id, shell=handle.shell.path, cwd=str(handle.cwd))
        return session, handle

    def list_sessions(self, project_id: Optional[str] = None) -> List[Session]:
        return self.registry.list_sessions(project_id)

    def get_session(self, session_id: str) -> Session:
        return self.registry.require(session_id)

    def _handle(self, session_id: str) -> ProcessHandle:
        self.registry.require(session_id)
        handle = self.bridge.get(session_id)
        if handle is None:
            raise SessionNotFound(session_id)
        return handle

    async def write(self, session_id: str, data: str) -> bool:
        handle = self._handle(session_id)
        session = self.registry.require(session_id)
        if session.status == "suspended":
            return False
        self.registry.touch(session_id)
        if session.status == "inactive":
            self.registry.set_status(session_id, "active", reason="input")
        self.sink.record_input(session_id, data)
        return await self.bridge.write(handle, data)

    def resize(self, session_id: str, rows: int, cols: int) -> None:
        self.bridge.resize(self._handle(session_id), rows, cols)

    async def send_control(self, session_id: str, key: str) -> bool:
        k = str(key or "").strip().lower()
        if k.startswith("ctrl+"):
            k = k[len("ctrl+"):]
        seq = CONTROL_KEYS.get(k)
        if seq is None:
            raise ValueError(f"unsupported control key: {key}")
        return await self.write(session_id, seq)

    async def set_env(self, session_id: str, key: str, value: str) -> bool:
        k = str(key or "").strip()
        if not _ENV_KEY_RE.fullmatch(k):
            raise ValueError(f"invalid environment variable name: {key!r}")
        handle = self._handle(session_id)
        ok = await self.write(session_id, f"export {k}={shlex.quote(str(value))}\r")
        if ok:
            handle.env[k] = str(value)
        return ok

    def set_focus(self, session_id: str, focused: bool) -> List[str]:
        return self.registry.set_focus(session_id, focused)

    async def suspend_project(
        self, project_id: str, *, requester: Optional[ConnectionBinding] = None
    ) -> List[Session]:
        """Suspend a project; `requester` gets one batch ack instead of a per-session notice."""

        async def _env_of(sid: str) -> Dict[str, str]:
            h = self.bridge.get(sid)
            return dict(h.env) if h is not None else {}

        suspended = await self.registry.suspend_project(project_id, env_of=_env_of)
        for s in suspended:
            binding = self._bindings.get(s.id)
            if binding is not None and binding is not requester:
                binding.deliver(wire.suspended(s.id))
        if requester is not None:
            n = len(suspended)
            requester.deliver(wire.suspended(requester.session_id, f"Suspended {n} session(s)", count=n))
        return suspended

    async def resume_project(
        self, project_id: str, *, requester: Optional[ConnectionBinding] = None
    ) -> ResumeResult:
        result = await self.registry.resume_project(project_id)
        now = self._clock()
        own: List[str] = []
        for session, buffered in result.resumed:
            binding = self._bindings.get(session.id)
            if binding is None:
                # Unbound again after resume: the keep-alive window starts over.
                self.registry.set_status(session.id, "inactive", reason="resumed_unbound")
                window = self._windows.get(session.id, self.settings.keepalive_network_seconds)
                self._keepalive[session.id] = now + window
                continue
            if binding is requester:
                own = buffered
                continue
            binding.deliver(wire.resumed(session.id))
            if buffered:
                binding.deliver(wire.buffered("".join(buffered)))
        if requester is not None:
            n = len(result.resumed)
            requester.deliver(
                wire.resumed(
                    requester.session_id,
                    f"Resumed {n} session(s)",
                    count=n,
                    expired=[s.id for s in result.expired],
                )
            )
            if own:
                requester.deliver(wire.buffered("".join(own)))
        return result

    def close_session(self, session_id: str, *, reason: str = "client_closed") -> bool:
        return self.registry.close_session(session_id, reason=reason)

    def close_project(self, project_id: str, *, reason: str = "project_closed") -> List[str]:
        return self.registry.close_project(project_id, reason=reason)

    # ----------------------------------------------------------- connections

    def _keepalive_window(self, disconnect_class: str) -> float:
        cfg = self.settings
        return {
            "intentional": cfg.keepalive_intentional_seconds,
            "reload": cfg.keepalive_reload_seconds,
            "limit": cfg.keepalive_limit_seconds,
        }.get(disconnect_class, cfg.keepalive_network_seconds)

    def _bind(self, session: Session) -> ConnectionBinding:
        binding = ConnectionBinding(
            session_id=session.id,
            project_id=session.project_id,
            max_messages=self.settings.outbox_max_messages,
            last_ping=self._clock(),
        )
        prior = self._bindings.get(session.id)
        if prior is not None:
            prior.connected = False
            prior.request_close(CLOSE_SUPERSEDED, "superseded by a newer connection")
        self._bindings[session.id] = binding
        self._keepalive.pop(session.id, None)
        self.registry.set_connected(session.id, True)
        return binding

    async def connect(
        self,
        project_id: str,
        *,
        session_id: Optional[str] = None,
        path: str = "",
        user_id: Optional[str] = None,
        mode: SessionMode = "normal",
        rows: Optional[int] = None,
        cols: Optional[int] = None,
    ) -> ConnectResult:
        """Find-or-create the session for a new connection and bind it."""
        sid = str(session_id or "").strip() or None
        handle: Optional[ProcessHandle] = None
        existing = self.registry.get(sid) if sid else None
        if existing is not None and existing.is_live:
            if existing.project_id != project_id:
                raise TerminalError(
                    f"session {sid} belongs to another project",
                    code="project_mismatch",
                    details={"session_id": sid},
                )
            deadline = self._keepalive.get(existing.id)
            handle = self.bridge.get(existing.id)
            lapsed = (
                existing.status != "suspended"
                and deadline is not None
                and self._clock() > deadline
                and existing.id not in self._bindings
            )
            if handle is None or lapsed:
                self.registry.close_session(existing.id, reason="keepalive_expired")
                existing = None
        else:
            existing = None

        if existing is not None and handle is not None:
            binding = self._bind(existing)
            if existing.status == "inactive":
                self.registry.set_status(existing.id, "active", reason="reconnected")
            binding.deliver(wire.reconnected(existing.id, existing.current_path))
            if existing.status == "suspended":
                # History already carries what was buffered so far; resume only flushes newer output.
                self.registry.drain_suspended_output(existing.id)
            binding.deliver(wire.history(handle.history_text()))
            if existing.status == "suspended":
                binding.deliver(wire.suspended(existing.id))
            logger.info(
                "[orchestrator] reconnected",
                extra={"session_id": existing.id, "project_id": project_id, "op": "reconnect"},
            )
            self._publish("session.connected", existing, {"reconnected": True})
            return ConnectResult(session=existing, handle=handle, binding=binding, reconnected=True)

        session, handle = await self._create(
            project_id, path, user_id=user_id, mode=mode, session_id=sid, rows=rows, cols=cols
        )
        binding = self._bind(session)
        binding.deliver(wire.connected(session.id, session.current_path, shell=handle.shell.path, env_files=handle.env_files))
        initial = handle.history_text()
        if initial:
            binding.deliver(wire.stream(initial, focused=session.focused))
        self._publish("session.connected", session, {"reconnected": False})
        return ConnectResult(session=session, handle=handle, binding=binding, reconnected=False)

    def disconnect(self, binding: ConnectionBinding, *, disconnect_class: str, close_code: Optional[int] = None) -> None:
        binding.connected = False
        sid = binding.session_id
        if self._bindings.get(sid) is not binding:
            return
        self._bindings.pop(sid, None)
        session = self.registry.get(sid)
        if session is None or not session.is_live:
            return
        self.registry.set_connected(sid, False)
        window = self._keepalive_window(disconnect_class)
        self._windows[sid] = window
        self._keepalive[sid] = self._clock() + window
        if session.status == "active":
            self.registry.set_status(sid, "inactive", reason=f"disconnect:{disconnect_class}")
        logger.info(
            f"[orchestrator] disconnected ({disconnect_class}), keeping process for {int(window)}s",
            extra={"session_id": sid, "project_id": session.project_id, "close_code": close_code, "op": "disconnect"},
        )
        self._publish("session.disconnected", session, {"class": disconnect_class, "code": close_code})

    def ping(self, binding: ConnectionBinding) -> None:
        binding.last_ping = self._clock()
        self.registry.touch(binding.session_id)
        binding.deliver(wire.pong())

    def binding(self, session_id: str) -> Optional[ConnectionBinding]:
        return self._bindings.get(session_id)

    # ------------------------------------------------------------------ sweep

    def sweep(self) -> Dict[str, Any]:
        now = self._clock()
        expired: List[str] = []
        for sid, deadline in list(self._keepalive.items()):
            if sid in self._bindings:
                self._keepalive.pop(sid, None)
                continue
            s = self.registry.get(sid)
            if s is not None and s.status == "suspended":
                # Suspension expiry owns this session until it is resumed.
                continue
            if now > deadline and self.registry.close_session(sid, reason="keepalive_expired"):
                expired.append(sid)
        result = self.registry.sweep()
        result["keepalive_expired"] = expired
        for sid in list(self._keepalive):
            s = self.registry.get(sid)
            if s is None or not s.is_live:
                self._keepalive.pop(sid, None)
        return result

    def stats(self) -> Dict[str, Any]:
        out = self.registry.stats()
        out["connections"] = len(self._bindings)
        out["processes"] = len(self.bridge.handles())
        out["health"] = self.health.last_report.to_dict() if self.health.last_report else None
        out["sink"] = self.sink.name
        return out
