import asyncio
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


class TestShellDiscovery(unittest.TestCase):
    def test_candidates_put_declared_shell_first(self) -> None:
        from shellbridge.runners.shells import ShellDiscovery

        d = ShellDiscovery(platform="linux", environ={"SHELL": "/usr/bin/fish"})
        cands = d.candidates()
        self.assertEqual(cands[0], "/usr/bin/fish")
        self.assertIn("/bin/bash", cands)
        self.assertLess(cands.index("/bin/bash"), cands.index("/bin/sh"))

        d = ShellDiscovery(platform="linux", environ={"SHELL": "/bin/sh"})
        self.assertEqual(d.candidates().count("/bin/sh"), 1)

    def test_platform_specific_order(self) -> None:
        from shellbridge.runners.shells import ShellDiscovery

        mac = ShellDiscovery(platform="darwin", environ={}).candidates()
        self.assertEqual(mac[0], "/bin/zsh")
        win = ShellDiscovery(platform="win32", environ={"COMSPEC": "C:\\Windows\\System32\\cmd.exe"}).candidates()
        self.assertEqual(win[0], "C:\\Windows\\System32\\cmd.exe")

    def test_env_preparation(self) -> None:
        from shellbridge.runners.shells import login_args, prepare_env

        env = prepare_env("/bin/zsh", {"PATH": ""})
        self.assertEqual(env["PATH"], "/usr/local/bin:/usr/bin:/bin")
        self.assertEqual(env["TERM"], "xterm-256color")
        self.assertEqual(env["COLORTERM"], "truecolor")
        self.assertEqual(env["SHELL"], "/bin/zsh")
        self.assertEqual(env["ZSH_DISABLE_COMPFIX"], "true")
        self.assertEqual(login_args("/bin/bash"), ["-l"])
        self.assertEqual(login_args("/bin/sh"), [])
        self.assertNotIn("SHELL", prepare_env("/bin/dash", {}))

    def test_no_working_shell_raises(self) -> None:
        from shellbridge.kernel.errors import NoShellAvailable
        from shellbridge.runners.shells import ShellDiscovery

        d = ShellDiscovery(platform="linux", environ={"SHELL": "/nonexistent/shell", "PATH": "/nonexistent"})
        with mock.patch("shellbridge.runners.shells.KNOWN_SHELLS", {"linux": ["/nonexistent/bash"]}):
            with self.assertRaises(NoShellAvailable):
                d.resolve_shell()
        self.assertEqual(d.available, [])

    def test_emergency_search_uses_path(self) -> None:
        from shellbridge.runners.shells import ShellDiscovery, ShellInfo

        d = ShellDiscovery(platform="linux", environ={"PATH": "/opt/bin"})
        with mock.patch("shellbridge.runners.shells.KNOWN_SHELLS", {"linux": []}), \
                mock.patch("shellbridge.runners.shells.shutil.which", side_effect=lambda n, path=None: "/opt/bin/dash" if n == "dash" else None), \
                mock.patch.object(ShellDiscovery, "probe", side_effect=lambda p: ShellInfo(path=p) if p == "/opt/bin/dash" else None):
            found = d.initialize()
        self.assertEqual([s.path for s in found], ["/opt/bin/dash"])
        self.assertEqual(d.resolve_shell().path, "/opt/bin/dash")

    @unittest.skipIf(sys.platform.startswith("win"), "posix shells only")
    def test_probe_real_sh(self) -> None:
        from shellbridge.runners.shells import ShellDiscovery

        d = ShellDiscovery(environ=dict(os.environ))
        info = d.probe("/bin/sh")
        self.assertIsNotNone(info)
        self.assertTrue(info.capabilities.interactive)
        self.assertIsNone(d.probe("/nonexistent/shell"))

    @unittest.skipIf(sys.platform.startswith("win"), "posix shells only")
    def test_probe_rejects_non_shell(self) -> None:
        from shellbridge.runners.shells import ShellDiscovery

        with tempfile.TemporaryDirectory() as td:
            fake = Path(td) / "notashell"
            fake.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
            fake.chmod(0o755)
            self.assertIsNone(ShellDiscovery().probe(str(fake)))



class _ScriptedProcess:
    """Answers the liveness sentinel with a fixed reply, or never when the reply is empty."""

    def __init__(self, reply: bytes) -> None:
        self.reply = reply
        self.stopped = False
        self._on_data = None

    def start(self, on_data, on_exit) -> None:
        self._on_data = on_data

    def set_handlers(self, on_data, on_exit) -> None:
        self._on_data = on_data

    async def write(self, data: bytes) -> bool:
        if self.reply:
            asyncio.get_running_loop().call_soon(self._on_data, self.reply)
        return True

    async def stop(self, *, grace: float = 1.0) -> None:
        self.stopped = True


class TestSpawnFallback(unittest.IsolatedAsyncioTestCase):
    def _discovery(self, paths):
        from shellbridge.runners.shells import ShellDiscovery, ShellInfo

        d = ShellDiscovery(platform="linux", environ={}, liveness_timeout=0.05)
        with mock.patch("shellbridge.runners.shells.KNOWN_SHELLS", {"linux": paths}), \
                mock.patch.object(ShellDiscovery, "probe", side_effect=lambda p: ShellInfo(path=p)):
            d.initialize()
        return d

    async def test_silent_shell_falls_back_to_next(self) -> None:
        from shellbridge.runners.shells import SpawnOptions

        d = self._discovery(["/bin/zsh", "/bin/bash"])
        started = {}

        def start(shell, opts):
            proc = _ScriptedProcess(b"" if shell.path == "/bin/zsh" else b"shell_ready\r\n$ ")
            started[shell.path] = proc
            return proc

        with mock.patch.object(d, "_start_process", side_effect=start):
            result = await d.spawn_shell(SpawnOptions(cwd=Path("/tmp"), env={}))
        self.assertEqual(result.shell.path, "/bin/bash")
        self.assertEqual(result.initial_output, b"shell_ready\r\n$ ")
        self.assertTrue(started["/bin/zsh"].stopped)
        self.assertFalse(started["/bin/bash"].stopped)

    async def test_preferred_shell_is_tried_first(self) -> None:
        from shellbridge.runners.shells import SpawnOptions

        d = self._discovery(["/bin/zsh", "/bin/bash"])
        order = []

        def start(shell, opts):
            order.append(shell.path)
            return _ScriptedProcess(b"ready")

        with mock.patch.object(d, "_start_process", side_effect=start):
            result = await d.spawn_shell(SpawnOptions(cwd=Path("/tmp"), env={}, preferred="/bin/bash"))
        self.assertEqual(order, ["/bin/bash"])
        self.assertEqual(result.shell.path, "/bin/bash")

    async def test_all_shells_failing_raises_spawn_exhausted(self) -> None:
        from shellbridge.kernel.errors import SpawnExhausted
        from shellbridge.runners.shells import SpawnOptions

        d = self._discovery(["/bin/zsh", "/bin/bash"])

        def start(shell, opts):
            if shell.path == "/bin/zsh":
                raise OSError("exec format error")
            return _ScriptedProcess(b"")

        with mock.patch.object(d, "_start_process", side_effect=start):
            with self.assertRaises(SpawnExhausted) as ctx:
                await d.spawn_shell(SpawnOptions(cwd=Path("/tmp"), env={}))
        err = ctx.exception
        self.assertEqual(err.tried, ["/bin/zsh", "/bin/bash"])
        self.assertIn("/bin/bash", err.last_error)
        self.assertIn("no response", err.last_error)
        self.assertEqual(err.details["tried"], ["/bin/zsh", "/bin/bash"])


if __name__ == "__main__":
    unittest.main()
