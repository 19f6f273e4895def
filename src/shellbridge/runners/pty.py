from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

import termios

logger = logging.getLogger("shellbridge.pty")

DataHandler = Callable[[bytes], None]
ExitHandler = Callable[[Optional[int]], None]


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        pass


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except OSError:
        try:
            os.kill(pid, sig)
        except OSError:
            pass


def _preexec() -> None:
    try:
        os.setsid()
    except OSError:
        pass
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class PtyProcess:
    """A child process attached to a pseudo-terminal.

    Reads are driven by the running asyncio loop (`add_reader` on the master
    fd), so many sessions share one thread. Handlers can be swapped while
    the process runs; output that arrives with no handler is dropped.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Dict[str, str],
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        cmd = [str(x) for x in argv if str(x or "").strip()]
        if not cmd:
            raise ValueError("empty command")

        master_fd, slave_fd = pty.openpty()
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)

        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=dict(env),
                close_fds=True,
                preexec_fn=_preexec,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)

        self.argv = cmd
        self.cols = int(cols)
        self.rows = int(rows)
        self._master_fd = master_fd
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reading = False
        self._closed = False
        self._on_data: Optional[DataHandler] = None
        self._on_exit: Optional[ExitHandler] = None
        self._reaper: Optional["asyncio.Task[None]"] = None
        self.exit_code: Optional[int] = None

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    def is_running(self) -> bool:
        return not self._closed and self._proc.poll() is None

    def set_handlers(self, on_data: Optional[DataHandler], on_exit: Optional[ExitHandler]) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def start(self, on_data: Optional[DataHandler] = None, on_exit: Optional[ExitHandler] = None) -> None:
        """Begin dispatching output on the running loop."""
        self.set_handlers(on_data, on_exit)
        if self._reading or self._closed:
            return
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 65536)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone.
            data = b""
        if not data:
            self._stop_reading()
            if self._loop is not None and self._reaper is None:
                self._reaper = self._loop.create_task(self._reap())
            return
        handler = self._on_data
        if handler is not None:
            handler(data)

    async def _reap(self) -> None:
        code = await asyncio.to_thread(self._proc.wait)
        self.exit_code = code
        self._close_fd()
        handler = self._on_exit
        if handler is not None:
            handler(code)

    async def write(self, data: bytes) -> bool:
        """Write to the master fd, retrying while the kernel buffer is full."""
        if not data:
            return True
        if self._closed:
            return False

        remaining = data
        attempt = 0
        while remaining and attempt < 50:
            try:
                written = os.write(self._master_fd, remaining)
                if written <= 0:
                    return False
                remaining = remaining[written:]
                attempt = 0
            except BlockingIOError:
                attempt += 1
                await asyncio.sleep(0.1)
            except OSError:
                return False
        return not remaining

    def resize(self, *, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0 or self._closed:
            return
        self.cols = int(cols)
        self.rows = int(rows)
        _set_winsize(self._master_fd, cols=self.cols, rows=self.rows)
        _best_effort_killpg(self.pid, signal.SIGWINCH)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_reading()
        try:
            os.close(self._master_fd)
        except OSError:
            pass

    async def stop(self, *, grace: float = 1.0) -> Optional[int]:
        """SIGTERM the process group, then SIGKILL after `grace` seconds."""
        self.set_handlers(self._on_data, None)
        self._stop_reading()
        if self._proc.poll() is None:
            _best_effort_killpg(self.pid, signal.SIGTERM)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + float(grace)
            while loop.time() < deadline and self._proc.poll() is None:
                await asyncio.sleep(0.05)
            if self._proc.poll() is None:
                _best_effort_killpg(self.pid, signal.SIGKILL)
                await asyncio.to_thread(self._proc.wait)
        self._close_fd()
        if self._reaper is not None and not self._reaper.done():
            self._reaper.cancel()
        self.exit_code = self._proc.returncode
        return self.exit_code
