"""Shell discovery and verified spawning.

Candidates are probed once at startup (`<shell> -c "echo test"`); at spawn
time each working shell is started in a PTY and must answer a sentinel
command before it is handed out.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..kernel.errors import NoShellAvailable, SpawnExhausted

logger = logging.getLogger("shellbridge.shells")

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"
LIVENESS_SENTINEL = b'echo "shell_ready"\r'

# Well-known interpreters per platform, in preference order.
KNOWN_SHELLS: Dict[str, List[str]] = {
    "linux": ["/bin/bash", "/usr/bin/bash", "/bin/sh", "/usr/bin/sh", "/bin/dash", "/bin/ash"],
    "darwin": ["/bin/zsh", "/bin/bash", "/usr/bin/bash", "/bin/sh"],
    "win32": [
        "C:\\Windows\\System32\\WindowsPowerShell\\v1.0\\powershell.exe",
        "C:\\Program Files\\PowerShell\\7\\pwsh.exe",
        "C:\\Windows\\System32\\cmd.exe",
    ],
}

EMERGENCY_NAMES = ("sh", "bash", "zsh", "dash", "cmd")


def _platform_key(platform: Optional[str] = None) -> str:
    p = platform or sys.platform
    if p.startswith("win"):
        return "win32"
    if p == "darwin":
        return "darwin"
    return "linux"


def shell_name(path: str) -> str:
    name = Path(str(path)).name.lower()
    return name[:-4] if name.endswith(".exe") else name


def login_args(path: str) -> List[str]:
    return ["-l"] if shell_name(path) in ("bash", "zsh") else []


def probe_args(path: str) -> List[str]:
    name = shell_name(path)
    if name == "cmd":
        return ["/c", "echo test"]
    if name in ("powershell", "pwsh"):
        return ["-NoProfile", "-Command", "echo test"]
    return ["-c", "echo test"]


def prepare_env(path: str, base: Dict[str, str]) -> Dict[str, str]:
    """Environment for an interactive shell started at `path`."""
    env = {str(k): str(v) for k, v in base.items() if v is not None}
    env["PATH"] = env.get("PATH") or DEFAULT_PATH
    env["TERM"] = "xterm-256color"
    env["COLORTERM"] = "truecolor"
    env.setdefault("LANG", "en_US.UTF-8")
    name = shell_name(path)
    if name in ("bash", "zsh"):
        env["SHELL"] = str(path)
    if name == "zsh":
        env["ZSH_DISABLE_COMPFIX"] = "true"
    return env


@dataclass(frozen=True)
class ShellCapabilities:
    interactive: bool = True
    color: bool = True
    unicode: bool = True


@dataclass(frozen=True)
class ShellInfo:
    path: str
    capabilities: ShellCapabilities = field(default_factory=ShellCapabilities)

    @property
    def name(self) -> str:
        return shell_name(self.path)


@dataclass
class SpawnOptions:
    cwd: Path
    env: Dict[str, str]
    rows: int = 24
    cols: int = 80
    preferred: Optional[str] = None


@dataclass
class SpawnResult:
    process: Any
    shell: ShellInfo
    capabilities: ShellCapabilities
    initial_output: bytes = b""


class ShellDiscovery:
    def __init__(
        self,
        *,
        platform: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
        probe_timeout: float = 3.0,
        liveness_timeout: float = 2.0,
    ) -> None:
        self.platform = _platform_key(platform)
        self._environ = dict(os.environ if environ is None else environ)
        self.probe_timeout = float(probe_timeout)
        self.liveness_timeout = float(liveness_timeout)
        self._available: List[ShellInfo] = []
        self._initialized = False

    @property
    def available(self) -> List[ShellInfo]:
        return list(self._available)

    def candidates(self) -> List[str]:
        declared = self._environ.get("COMSPEC" if self.platform == "win32" else "SHELL", "")
        out: List[str] = []
        for c in [declared, *KNOWN_SHELLS.get(self.platform, [])]:
            c = str(c or "").strip()
            if c and c not in out:
                out.append(c)
        return out

    def probe(self, path: str) -> Optional[ShellInfo]:
        p = Path(path)
        if not p.is_file():
            return None
        if self.platform != "win32" and not os.access(p, os.X_OK):
            return None
        try:
            proc = subprocess.run(
                [str(p), *probe_args(str(p))],
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
                env=self._environ,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"[shells] probe failed for {path}: {e}")
            return None
        if "test" not in (proc.stdout or ""):
            return None
        caps = ShellCapabilities(interactive=True, color=self.platform != "win32", unicode=True)
        return ShellInfo(path=str(p), capabilities=caps)

    def _emergency_search(self) -> Optional[ShellInfo]:
        path_env = self._environ.get("PATH") or DEFAULT_PATH
        for name in EMERGENCY_NAMES:
            found = shutil.which(name, path=path_env)
            if not found:
                continue
            info = self.probe(found)
            if info is not None:
                logger.warning(f"[shells] using emergency shell {found}")
                return info
        return None

    def initialize(self, *, force: bool = False) -> List[ShellInfo]:
        """Probe every candidate once. Blocking; run off the event loop."""
        if self._initialized and not force:
            return self.available
        found: List[ShellInfo] = []
        for c in self.candidates():
            info = self.probe(c)
            if info is not None and all(f.path != info.path for f in found):
                found.append(info)
        if not found:
            emergency = self._emergency_search()
            if emergency is not None:
                found.append(emergency)
        self._available = found
        self._initialized = True
        if found:
            logger.info(f"[shells] available: {', '.join(s.path for s in found)}")
        else:
            logger.error("[shells] no working shell found")
        return self.available

    def resolve_shell(self) -> ShellInfo:
        if not self._initialized:
            self.initialize()
        if not self._available:
            raise NoShellAvailable(
                "no working shell found",
                details={"platform": self.platform, "candidates": self.candidates()},
            )
        return self._available[0]

    def info(self) -> Dict[str, Any]:
        default = self._available[0].path if self._available else None
        return {
            "platform": self.platform,
            "default": default,
            "available": [{"path": s.path, "name": s.name, "capabilities": asdict(s.capabilities)} for s in self._available],
            "candidates": self.candidates(),
        }

    def _spawn_order(self, preferred: Optional[str]) -> List[ShellInfo]:
        order: List[ShellInfo] = []
        if preferred:
            match = [s for s in self._available if s.path == preferred]
            order.extend(match or [ShellInfo(path=str(preferred))])
        for s in self._available:
            if all(o.path != s.path for o in order):
                order.append(s)
        return order

    def _start_process(self, shell: ShellInfo, opts: SpawnOptions) -> Any:
        from .pty import PtyProcess

        return PtyProcess(
            [shell.path, *login_args(shell.path)],
            cwd=opts.cwd,
            env=prepare_env(shell.path, opts.env),
            cols=opts.cols,
            rows=opts.rows,
        )

    async def _await_liveness(self, proc: Any) -> Optional[bytes]:
        received = bytearray()
        ready = asyncio.Event()

        def _on_data(chunk: bytes) -> None:
            received.extend(chunk)
            ready.set()

        def _on_exit(code: Optional[int]) -> None:
            ready.set()

        proc.start(_on_data, _on_exit)
        if not await proc.write(LIVENESS_SENTINEL):
            return None
        try:
            await asyncio.wait_for(ready.wait(), timeout=self.liveness_timeout)
        except asyncio.TimeoutError:
            return None
        if not received:
            return None
        proc.set_handlers(None, None)
        return bytes(received)

    async def spawn_shell(self, opts: SpawnOptions) -> SpawnResult:
        """Spawn the first shell that answers the sentinel; raise SpawnExhausted if none does."""
        if not self._initialized:
            await asyncio.to_thread(self.initialize)
        tried: List[str] = []
        last_error = "no shells available"
        for shell in self._spawn_order(opts.preferred):
            tried.append(shell.path)
            try:
                proc = self._start_process(shell, opts)
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                last_error = f"{shell.path}: {e}"
                logger.warning(f"[shells] spawn failed: {last_error}")
                continue
            output = await self._await_liveness(proc)
            if output is None:
                last_error = f"{shell.path}: no response within {self.liveness_timeout}s"
                logger.warning(f"[shells] {last_error}")
                await proc.stop()
                continue
            return SpawnResult(process=proc, shell=shell, capabilities=shell.capabilities, initial_output=output)
        raise SpawnExhausted(tried, last_error)
