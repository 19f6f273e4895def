"""Optional recorders for session input and output."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from ..util.time import utc_now_iso

logger = logging.getLogger("shellbridge.sinks")


class LoggingSink:
    """Interface for command/output recorders. The base class records nothing."""

    name = "none"

    def session_started(self, session_id: str, project_id: str, *, shell: str, cwd: str) -> None:
        return None

    def record_input(self, session_id: str, data: str) -> None:
        return None

    def record_output(self, session_id: str, data: str) -> None:
        return None

    def session_ended(self, session_id: str, *, reason: str) -> None:
        return None

    def close(self) -> None:
        return None


NullSink = LoggingSink


class JsonlSink(LoggingSink):
    """Append one JSON object per event to a file."""

    name = "jsonl"

    def __init__(self, path: Path, *, record_output: bool = True) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._record_output = bool(record_output)
        self._lock = threading.Lock()
        self._fh = self.path.open("a", encoding="utf-8")

    def _write(self, kind: str, session_id: str, **fields: Any) -> None:
        doc: Dict[str, Any] = {"ts": utc_now_iso(), "kind": kind, "session_id": session_id}
        doc.update(fields)
        line = json.dumps(doc, ensure_ascii=False)
        with self._lock:
            if self._fh.closed:
                return
            self._fh.write(line + "\n")
            self._fh.flush()

    def session_started(self, session_id: str, project_id: str, *, shell: str, cwd: str) -> None:
        self._write("session.started", session_id, project_id=project_id, shell=shell, cwd=cwd)

    def record_input(self, session_id: str, data: str) -> None:
        self._write("input", session_id, data=data)

    def record_output(self, session_id: str, data: str) -> None:
        if self._record_output:
            self._write("output", session_id, data=data)

    def session_ended(self, session_id: str, *, reason: str) -> None:
        self._write("session.ended", session_id, reason=reason)

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()


def make_sink(kind: str, home: Optional[Path] = None, *, record_output: bool = True) -> LoggingSink:
    k = str(kind or "none").strip().lower()
    if k == "jsonl":
        from ..paths import ensure_home

        base = home or ensure_home()
        path = base / "logs" / "sessions.jsonl"
        logger.info(f"[sinks] recording sessions to {path}")
        return JsonlSink(path, record_output=record_output)
    return NullSink()
