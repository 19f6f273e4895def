"""In-memory session registry.

Owns every Session record and the rules around them: capacity caps with
least-recently-active eviction, the creation limiter, focus tracking and the
per-project suspend/resume state machine. Process handles live elsewhere;
the registry reports every change through a single observer callback and the
owner reacts (e.g. killing the process of a closed session).
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import Session, SessionMode, SessionStatus
from ..util.ring import RingBuffer
from ..util.time import Clock, monotonic, utc_now_iso
from .errors import CapacityExceeded, InvalidTransition, SessionNotFound
from .ratelimit import CreationLimiter
from .settings import TerminalSettings

logger = logging.getLogger("shellbridge.registry")


_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "connecting": ("active", "error", "closed"),
    "active": ("inactive", "suspended", "error", "closed"),
    "inactive": ("active", "suspended", "error", "closed"),
    "suspended": ("active", "inactive", "error", "closed"),
    "error": ("closed",),
    "closed": (),
}

_SUSPENDABLE = ("active", "inactive")


@dataclass
class SuspensionRecord:
    suspended_at: float
    buffer: RingBuffer[str]
    last_activity: float
    working_dir: str
    environment: Dict[str, str] = field(default_factory=dict)


@dataclass
class LifecycleEvent:
    kind: str
    session: Session
    data: Dict[str, Any] = field(default_factory=dict)


RegistryObserver = Callable[[LifecycleEvent], None]


@dataclass
class ResumeResult:
    resumed: List[Tuple[Session, List[str]]] = field(default_factory=list)
    expired: List[Session] = field(default_factory=list)


class ProjectOpQueue:
    """Serializes async operations per project, in arrival order."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, project_id: str) -> asyncio.Lock:
        lk = self._locks.get(project_id)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[project_id] = lk
        return lk


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class SessionRegistry:
    def __init__(
        self,
        settings: Optional[TerminalSettings] = None,
        *,
        clock: Optional[Clock] = None,
        limiter: Optional[CreationLimiter] = None,
        observer: Optional[RegistryObserver] = None,
    ) -> None:
        self.settings = settings or TerminalSettings()
        self._clock = clock or monotonic
        self.limiter = limiter or CreationLimiter(
            max_per_window=self.settings.max_creations_per_minute,
            window_seconds=self.settings.creation_window_seconds,
            cooldown_seconds=self.settings.breaker_cooldown_seconds,
            clock=self._clock,
        )
        self._observer = observer
        self._sessions: Dict[str, Session] = {}
        self._closed_at: Dict[str, float] = {}
        self._suspensions: Dict[str, SuspensionRecord] = {}
        self._ops = ProjectOpQueue()
        self._seq = 0

    # ------------------------------------------------------------------ events

    def bind_observer(self, observer: Optional[RegistryObserver]) -> None:
        self._observer = observer

    def _emit(self, kind: str, session: Session, **data: Any) -> None:
        if self._observer is None:
            return
        try:
            self._observer(LifecycleEvent(kind=kind, session=session, data=data))
        except Exception:
            logger.exception(f"[registry] observer failed for {kind}", extra={"session_id": session.id})

    # ----------------------------------------------------------------- queries

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        s = self._sessions.get(session_id)
        if s is None or s.status == "closed":
            raise SessionNotFound(session_id)
        return s

    def list_sessions(self, project_id: Optional[str] = None) -> List[Session]:
        out = [s for s in self._sessions.values() if s.is_live and (project_id is None or s.project_id == project_id)]
        out.sort(key=lambda s: s.seq)
        return out

    def focused_sessions(self, project_id: str) -> List[str]:
        return [s.id for s in self.list_sessions(project_id) if s.focused]

    def is_focused(self, session_id: str) -> bool:
        s = self._sessions.get(session_id)
        return bool(s is not None and s.is_live and s.focused)

    def suspension(self, session_id: str) -> Optional[SuspensionRecord]:
        return self._suspensions.get(session_id)

    def stats(self) -> Dict[str, Any]:
        live = self.list_sessions()
        per_project: Dict[str, Dict[str, int]] = {}
        for s in live:
            row = per_project.setdefault(s.project_id, {"sessions": 0, "focused": 0, "suspended": 0})
            row["sessions"] += 1
            if s.focused:
                row["focused"] += 1
            if s.status == "suspended":
                row["suspended"] += 1
        return {
            "total": len(live),
            "closed_pending_purge": len(self._closed_at),
            "suspended": len(self._suspensions),
            "projects": per_project,
        }

    # --------------------------------------------------------------- creation

    def create_session(
        self,
        project_id: str,
        path: str,
        *,
        user_id: Optional[str] = None,
        mode: SessionMode = "normal",
        session_id: Optional[str] = None,
    ) -> Session:
        pid = str(project_id or "").strip()
        if not pid:
            raise ValueError("project_id is required")

        self.limiter.check(pid)

        sid = str(session_id or "").strip()
        if sid:
            prior = self._sessions.get(sid)
            if prior is not None:
                if prior.is_live:
                    raise ValueError(f"session already exists: {sid}")
                self._forget(sid)

        cfg = self.settings
        if cfg.max_sessions_per_project <= 0 or cfg.max_total_sessions <= 0:
            raise CapacityExceeded("session capacity is zero", details={"project_id": pid})

        while len(self.list_sessions(pid)) >= cfg.max_sessions_per_project:
            self._evict_lra(self.list_sessions(pid), reason="project_capacity")
        while len(self.list_sessions()) >= cfg.max_total_sessions:
            self._evict_lra(self.list_sessions(), reason="global_capacity")

        self.limiter.record(pid)

        if not sid:
            sid = new_session_id()
            while sid in self._sessions:
                sid = new_session_id()

        self._seq += 1
        now = self._clock()
        session = Session(
            id=sid,
            project_id=pid,
            user_id=user_id,
            mode=mode,
            tab_name=self._next_tab_name(pid),
            current_path=str(path or ""),
            last_activity=now,
            seq=self._seq,
        )
        if cfg.max_focused_per_project > 0 and len(self.focused_sessions(pid)) < cfg.max_focused_per_project:
            session.focused = True
        self._sessions[sid] = session
        logger.info(
            f"[registry] created {sid} ({session.tab_name}) in {pid}",
            extra={"session_id": sid, "project_id": pid, "op": "create"},
        )
        self._emit("session.created", session)
        return session

    def _next_tab_name(self, project_id: str) -> str:
        taken = {s.tab_name for s in self.list_sessions(project_id)}
        n = len(taken) + 1
        while f"Terminal {n}" in taken:
            n += 1
        return f"Terminal {n}"

    def _evict_lra(self, candidates: List[Session], *, reason: str) -> Optional[Session]:
        if not candidates:
            return None
        victim = min(candidates, key=lambda s: (s.last_activity, s.seq))
        logger.info(
            f"[registry] evicting {victim.id} ({reason})",
            extra={"session_id": victim.id, "project_id": victim.project_id, "op": "evict"},
        )
        self.close_session(victim.id, reason=reason)
        return victim

    # ------------------------------------------------------------- lifecycle

    def set_status(self, session_id: str, status: SessionStatus, *, reason: str = "") -> Session:
        s = self._sessions.get(session_id)
        if s is None:
            raise SessionNotFound(session_id)
        if s.status == status:
            return s
        if status not in _TRANSITIONS.get(s.status, ()):
            raise InvalidTransition(session_id, s.status, status)
        prev = s.status
        s.status = status
        s.updated_at = utc_now_iso()
        if status == "closed":
            self._on_closed(s)
        self._emit("session.status_changed", s, previous=prev, status=status, reason=reason)
        if status == "closed":
            self._emit("session.closed", s, reason=reason or "closed")
        return s

    def _on_closed(self, s: Session) -> None:
        s.focused = False
        s.ws_connected = False
        self._suspensions.pop(s.id, None)
        self._closed_at[s.id] = self._clock()

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._closed_at.pop(session_id, None)
        self._suspensions.pop(session_id, None)

    def touch(self, session_id: str) -> None:
        s = self._sessions.get(session_id)
        if s is not None and s.is_live:
            s.last_activity = self._clock()

    def set_connected(self, session_id: str, connected: bool) -> None:
        s = self._sessions.get(session_id)
        if s is None or not s.is_live:
            return
        s.ws_connected = bool(connected)
        s.updated_at = utc_now_iso()
        if connected:
            s.last_activity = self._clock()

    def set_path(self, session_id: str, path: str) -> None:
        s = self._sessions.get(session_id)
        if s is not None:
            s.current_path = str(path or "")

    def close_session(self, session_id: str, *, reason: str = "closed") -> bool:
        s = self._sessions.get(session_id)
        if s is None or s.status == "closed":
            return False
        self.set_status(session_id, "closed", reason=reason)
        logger.info(
            f"[registry] closed {session_id}: {reason}",
            extra={"session_id": session_id, "project_id": s.project_id, "op": "close"},
        )
        return True

    def close_project(self, project_id: str, *, reason: str = "project_closed") -> List[str]:
        closed = []
        for s in self.list_sessions(project_id):
            if self.close_session(s.id, reason=reason):
                closed.append(s.id)
        return closed

    def close_oldest(self, count: int, *, reason: str) -> List[str]:
        """Close up to `count` least-recently-active sessions across all projects."""
        victims = sorted(self.list_sessions(), key=lambda s: (s.last_activity, s.seq))[: max(0, int(count))]
        return [s.id for s in victims if self.close_session(s.id, reason=reason)]

    def close_all(self, *, reason: str) -> List[str]:
        return [s.id for s in self.list_sessions() if self.close_session(s.id, reason=reason)]

    # ----------------------------------------------------------------- focus

    def set_focus(self, session_id: str, focused: bool) -> List[str]:
        """Focus or blur a session. Returns ids of sessions that lost focus as a side effect."""
        s = self.require(session_id)
        if s.focused == bool(focused):
            if focused:
                s.last_activity = self._clock()
            return []

        unfocused: List[str] = []
        if focused:
            cap = self.settings.max_focused_per_project
            if cap <= 0:
                return []
            others = [o for o in self.list_sessions(s.project_id) if o.focused and o.id != s.id]
            while len(others) >= cap:
                victim = min(others, key=lambda o: (o.last_activity, o.seq))
                victim.focused = False
                victim.updated_at = utc_now_iso()
                others.remove(victim)
                unfocused.append(victim.id)
            s.last_activity = self._clock()
        s.focused = bool(focused)
        s.updated_at = utc_now_iso()

        all_focused = self.focused_sessions(s.project_id)
        for vid in unfocused:
            self._emit("session.focus_changed", self._sessions[vid], focused=False, all_focused=all_focused)
        self._emit("session.focus_changed", s, focused=s.focused, all_focused=all_focused)
        return unfocused

    # ------------------------------------------------------ suspend / resume

    async def suspend_project(
        self,
        project_id: str,
        *,
        env_of: Optional[Callable[[str], Awaitable[Dict[str, str]]]] = None,
    ) -> List[Session]:
        """Suspend every active/inactive session of a project. Idempotent."""
        async with self._ops.lock(project_id):
            now = self._clock()
            suspended: List[Session] = []
            for s in self.list_sessions(project_id):
                if s.status not in _SUSPENDABLE:
                    continue
                environment = dict(await env_of(s.id)) if env_of is not None else {}
                if s.status not in _SUSPENDABLE:
                    continue
                self._suspensions[s.id] = SuspensionRecord(
                    suspended_at=now,
                    buffer=RingBuffer(self.settings.suspension_buffer_entries),
                    last_activity=s.last_activity,
                    working_dir=s.current_path,
                    environment=environment,
                )
                self.set_status(s.id, "suspended", reason="project_suspended")
                self._emit("session.suspended", s)
                suspended.append(s)
            if suspended:
                logger.info(
                    f"[registry] suspended {len(suspended)} session(s) in {project_id}",
                    extra={"project_id": project_id, "op": "suspend"},
                )
            return suspended

    async def resume_project(self, project_id: str) -> ResumeResult:
        """Resume suspended sessions; ones suspended past the limit are closed instead."""
        async with self._ops.lock(project_id):
            now = self._clock()
            result = ResumeResult()
            for s in self.list_sessions(project_id):
                if s.status != "suspended":
                    continue
                rec = self._suspensions.pop(s.id, None)
                if rec is None or now - rec.suspended_at > self.settings.max_suspension_seconds:
                    self.close_session(s.id, reason="suspension_expired")
                    result.expired.append(s)
                    continue
                self.set_status(s.id, "active", reason="project_resumed")
                s.last_activity = now
                buffered = rec.buffer.drain()
                self._emit("session.resumed", s, buffered=len(buffered))
                result.resumed.append((s, buffered))
            if result.resumed or result.expired:
                logger.info(
                    f"[registry] resumed {len(result.resumed)} session(s) in {project_id}, {len(result.expired)} expired",
                    extra={"project_id": project_id, "op": "resume"},
                )
            return result

    def buffer_suspended_output(self, session_id: str, chunk: str) -> bool:
        rec = self._suspensions.get(session_id)
        if rec is None:
            return False
        rec.buffer.push(chunk)
        rec.last_activity = self._clock()
        return True

    def drain_suspended_output(self, session_id: str) -> List[str]:
        rec = self._suspensions.get(session_id)
        return rec.buffer.drain() if rec is not None else []

    # ----------------------------------------------------------------- sweep

    def sweep(self) -> Dict[str, Any]:
        now = self._clock()
        expired: List[str] = []
        for sid, rec in list(self._suspensions.items()):
            if now - rec.suspended_at > self.settings.max_suspension_seconds:
                if self.close_session(sid, reason="suspension_expired"):
                    expired.append(sid)

        self.limiter.sweep()

        evicted: List[str] = []
        cfg = self.settings
        for pid in {s.project_id for s in self.list_sessions()}:
            while len(self.list_sessions(pid)) > max(0, cfg.max_sessions_per_project):
                v = self._evict_lra(self.list_sessions(pid), reason="project_capacity")
                if v is None:
                    break
                evicted.append(v.id)
        while len(self.list_sessions()) > max(0, cfg.max_total_sessions):
            v = self._evict_lra(self.list_sessions(), reason="global_capacity")
            if v is None:
                break
            evicted.append(v.id)

        purged: List[str] = []
        for sid, closed_at in list(self._closed_at.items()):
            if now - closed_at >= cfg.closed_retention_seconds:
                self._forget(sid)
                purged.append(sid)

        return {"expired": expired, "evicted": evicted, "purged": purged}
