"""Process bridge: one PTY-backed shell per session.

Every chunk of output is decoded incrementally (so multi-byte characters
split across reads survive), appended to the handle's replay ring and then
passed to the registered data callbacks.
"""
from __future__ import annotations

import codecs
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import Session
from ..kernel.envfiles import load_env_files
from ..kernel.settings import TerminalSettings
from ..runners.shells import ShellDiscovery, ShellInfo, SpawnOptions
from ..util.ring import RingBuffer

logger = logging.getLogger("shellbridge.bridge")

DataCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int]], None]

# Control keys accepted by `ctrl` messages.
CONTROL_KEYS: Dict[str, str] = {
    "c": "\x03",
    "d": "\x04",
    "z": "\x1a",
    "l": "\x0c",
    "\\": "\x1c",
    "a": "\x01",
    "e": "\x05",
    "k": "\x0b",
    "u": "\x15",
    "w": "\x17",
}


def resolve_working_dir(path: Optional[str]) -> Path:
    """Requested path if it is a directory, its parent if it is a file, else home."""
    raw = str(path or "").strip()
    if raw:
        p = Path(raw).expanduser()
        if p.is_dir():
            return p.resolve()
        if p.is_file():
            return p.parent.resolve()
    return Path.home()


@dataclass
class ProcessHandle:
    session_id: str
    process: object
    shell: ShellInfo
    cwd: Path
    env: Dict[str, str]
    rows: int
    cols: int
    history: RingBuffer[str]
    env_files: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None
    exited: bool = False
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    data_callbacks: List[DataCallback] = field(default_factory=list)
    exit_callbacks: List[ExitCallback] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return int(getattr(self.process, "pid", 0) or 0)

    def history_text(self) -> str:
        return "".join(self.history.snapshot())


class ProcessBridge:
    def __init__(self, discovery: ShellDiscovery, settings: Optional[TerminalSettings] = None) -> None:
        self.discovery = discovery
        self.settings = settings or TerminalSettings()
        self._handles: Dict[str, ProcessHandle] = {}

    def get(self, session_id: str) -> Optional[ProcessHandle]:
        return self._handles.get(session_id)

    def handles(self) -> List[ProcessHandle]:
        return list(self._handles.values())

    def build_env(self, cwd: Path, extra: Optional[Dict[str, str]] = None) -> Tuple[Dict[str, str], List[str]]:
        project_env, loaded = load_env_files(cwd, self.settings.env_files)
        env: Dict[str, str] = dict(os.environ)
        env.update(project_env)
        env.update({k: v for k, v in (extra or {}).items() if isinstance(k, str) and isinstance(v, str)})
        bin_dir = cwd / "node_modules" / ".bin"
        if bin_dir.is_dir():
            env["PATH"] = os.pathsep.join([str(bin_dir), env.get("PATH") or ""]).rstrip(os.pathsep)
        return env, loaded

    async def open(
        self,
        session: Session,
        *,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        rows: Optional[int] = None,
        cols: Optional[int] = None,
    ) -> ProcessHandle:
        existing = self._handles.get(session.id)
        if existing is not None and not existing.exited:
            return existing

        cwd = resolve_working_dir(working_dir if working_dir is not None else session.current_path)
        proc_env, loaded = self.build_env(cwd, env)
        r = int(rows or self.settings.default_rows)
        c = int(cols or self.settings.default_cols)

        result = await self.discovery.spawn_shell(SpawnOptions(cwd=cwd, env=proc_env, rows=r, cols=c))
        handle = ProcessHandle(
            session_id=session.id,
            process=result.process,
            shell=result.shell,
            cwd=cwd,
            env=proc_env,
            rows=r,
            cols=c,
            history=RingBuffer(self.settings.history_buffer_entries),
            env_files=loaded,
        )
        self._handles[session.id] = handle
        result.process.set_handlers(lambda b: self._on_bytes(handle, b), lambda code: self._on_exit(handle, code))
        if result.initial_output:
            self._on_bytes(handle, result.initial_output)

        logger.info(
            f"[bridge] spawned {result.shell.path} pid={handle.pid} cwd={cwd}",
            extra={"session_id": session.id, "project_id": session.project_id, "op": "spawn"},
        )

        if session.mode == "assistant" and self.settings.assistant_command:
            await self.write(handle, self.settings.assistant_command.rstrip("\r\n") + "\r")
        return handle

    def _on_bytes(self, handle: ProcessHandle, data: bytes) -> None:
        text = handle.decoder.decode(data)
        if not text:
            return
        handle.history.push(text)
        for cb in list(handle.data_callbacks):
            try:
                cb(text)
            except Exception:
                logger.exception("[bridge] data callback failed", extra={"session_id": handle.session_id})

    def _on_exit(self, handle: ProcessHandle, code: Optional[int]) -> None:
        tail = handle.decoder.decode(b"", final=True)
        if tail:
            handle.history.push(tail)
            for cb in list(handle.data_callbacks):
                cb(tail)
        handle.exited = True
        handle.exit_code = code
        if self._handles.get(handle.session_id) is handle:
            self._handles.pop(handle.session_id, None)
        logger.info(
            f"[bridge] process exited code={code}",
            extra={"session_id": handle.session_id, "op": "exit"},
        )
        for cb in list(handle.exit_callbacks):
            try:
                cb(code)
            except Exception:
                logger.exception("[bridge] exit callback failed", extra={"session_id": handle.session_id})

    def on_data(self, handle: ProcessHandle, callback: DataCallback) -> None:
        handle.data_callbacks.append(callback)

    def on_exit(self, handle: ProcessHandle, callback: ExitCallback) -> None:
        handle.exit_callbacks.append(callback)

    async def write(self, handle: ProcessHandle, data: str) -> bool:
        if handle.exited or not data:
            return False
        return await handle.process.write(data.encode("utf-8", errors="replace"))  # type: ignore[attr-defined]

    def resize(self, handle: ProcessHandle, rows: int, cols: int) -> None:
        if handle.exited:
            return
        handle.rows = int(rows)
        handle.cols = int(cols)
        handle.process.resize(cols=int(cols), rows=int(rows))  # type: ignore[attr-defined]

    def history(self, handle: ProcessHandle) -> List[str]:
        return handle.history.snapshot()

    def detach(self, session_id: str) -> Optional[ProcessHandle]:
        """Forget the handle for `session_id` and silence its callbacks; the process keeps running."""
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.data_callbacks.clear()
            handle.exit_callbacks.clear()
        return handle

    async def close(self, handle: ProcessHandle) -> None:
        if self._handles.get(handle.session_id) is handle:
            self.detach(handle.session_id)
        handle.data_callbacks.clear()
        handle.exit_callbacks.clear()
        if handle.exited:
            return
        handle.exited = True
        code = await handle.process.stop()  # type: ignore[attr-defined]
        handle.exit_code = code
        logger.info(f"[bridge] killed pid={handle.pid}", extra={"session_id": handle.session_id, "op": "kill"})

    async def close_all(self) -> None:
        for h in list(self._handles.values()):
            await self.close(h)
