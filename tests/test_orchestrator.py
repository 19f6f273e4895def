import asyncio
import unittest

from fakes import FakeDiscovery, drain, make_orchestrator


def _types(messages):
    return [m["type"] if isinstance(m, dict) else ("close", m.code) for m in messages]


class TestOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from shellbridge.util.time import ManualClock

        self.clock = ManualClock()
        self.orch, self.discovery = make_orchestrator(clock=self.clock)
        await self.orch.start()

    async def asyncTearDown(self) -> None:
        await self.orch.stop()

    async def test_connect_creates_session_and_streams_output(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        self.assertFalse(res.reconnected)
        self.assertEqual(res.session.status, "active")
        msgs = drain(res.binding)
        self.assertEqual(_types(msgs), ["connected", "stream"])
        self.assertEqual(msgs[0]["sessionId"], res.session.id)
        self.assertEqual(msgs[1]["data"], "$ ")

        await self.orch.write(res.session.id, "ls\r")
        await asyncio.sleep(0)
        msgs = drain(res.binding)
        self.assertEqual(msgs, [{"type": "stream", "data": "ls\r"}])

    async def test_unfocused_output_is_tagged(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        drain(res.binding)
        self.orch.set_focus(res.session.id, False)
        self.assertEqual(_types(drain(res.binding)), ["focusUpdate"])
        self.discovery.spawned[0].emit(b"hello")
        self.assertEqual(drain(res.binding), [{"type": "stream", "data": "hello", "unfocused": True}])

    async def test_reconnect_replays_history(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        self.orch.disconnect(res.binding, disconnect_class="reload", close_code=1001)
        self.assertEqual(self.orch.get_session(sid).status, "inactive")

        self.discovery.spawned[0].emit(b"while you were away\n")
        self.clock.advance(30)

        again = await self.orch.connect("p1", session_id=sid)
        self.assertTrue(again.reconnected)
        msgs = drain(again.binding)
        self.assertEqual(_types(msgs), ["reconnected", "history"])
        self.assertIn("while you were away", msgs[1]["data"])
        self.assertEqual(self.orch.get_session(sid).status, "active")
        self.assertEqual(len(self.discovery.spawned), 1)

    async def test_reconnect_after_keepalive_creates_fresh_session(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        self.orch.disconnect(res.binding, disconnect_class="reload", close_code=1001)
        self.clock.advance(61)

        again = await self.orch.connect("p1", session_id=sid, path="/tmp")
        self.assertFalse(again.reconnected)
        self.assertEqual(again.session.id, sid)
        self.assertEqual(_types(drain(again.binding))[0], "connected")
        self.assertEqual(len(self.discovery.spawned), 2)
        await asyncio.sleep(0)
        self.assertTrue(self.discovery.spawned[0].stopped)

    async def test_sweep_enforces_keepalive(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        self.orch.disconnect(res.binding, disconnect_class="intentional", close_code=1000)
        self.clock.advance(3000)
        self.assertEqual(self.orch.sweep()["keepalive_expired"], [])
        self.clock.advance(601)
        self.assertEqual(self.orch.sweep()["keepalive_expired"], [sid])
        await asyncio.sleep(0)
        self.assertTrue(self.discovery.spawned[0].stopped)

    async def test_second_connection_supersedes_first(self) -> None:
        first = await self.orch.connect("p1", path="/tmp")
        second = await self.orch.connect("p1", session_id=first.session.id)
        self.assertEqual(_types(drain(first.binding))[-1], ("close", 4009))
        self.assertIs(self.orch.binding(first.session.id), second.binding)
        self.orch.disconnect(first.binding, disconnect_class="limit", close_code=4009)
        self.assertIs(self.orch.binding(first.session.id), second.binding)

    async def test_suspend_buffers_and_resume_flushes(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        drain(res.binding)
        await self.orch.suspend_project("p1")
        self.assertEqual(_types(drain(res.binding)), ["suspended"])
        self.assertFalse(await self.orch.write(sid, "ignored\r"))
        self.discovery.spawned[0].emit(b"one ")
        self.discovery.spawned[0].emit(b"two")
        self.assertEqual(drain(res.binding), [])

        await self.orch.resume_project("p1")
        msgs = drain(res.binding)
        self.assertEqual(_types(msgs), ["resumed", "buffered"])
        self.assertEqual(msgs[1]["data"], "one two")

    async def test_suspended_session_outlives_socket_keepalive(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        await self.orch.suspend_project("p1")
        self.orch.disconnect(res.binding, disconnect_class="reload", close_code=1001)
        self.clock.advance(120)
        self.assertEqual(self.orch.sweep()["keepalive_expired"], [])
        self.assertEqual(self.orch.get_session(sid).status, "suspended")

        result = await self.orch.resume_project("p1")
        self.assertEqual([s.id for s, _ in result.resumed], [sid])
        self.assertEqual(result.expired, [])
        self.assertEqual(self.orch.get_session(sid).status, "inactive")

        # Still unbound after resume: the reload window applies again from here.
        self.clock.advance(30)
        self.assertEqual(self.orch.sweep()["keepalive_expired"], [])
        self.clock.advance(31)
        self.assertEqual(self.orch.sweep()["keepalive_expired"], [sid])

    async def test_reconnect_to_suspended_session_past_keepalive(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        proc = self.discovery.spawned[0]
        await self.orch.suspend_project("p1")
        self.orch.disconnect(res.binding, disconnect_class="reload", close_code=1001)
        proc.emit(b"during ")
        self.clock.advance(120)

        again = await self.orch.connect("p1", session_id=sid)
        self.assertTrue(again.reconnected)
        self.assertEqual(len(self.discovery.spawned), 1)
        msgs = drain(again.binding)
        self.assertEqual(_types(msgs), ["reconnected", "history", "suspended"])
        self.assertIn("during ", msgs[1]["data"])

        proc.emit(b"after")
        await self.orch.resume_project("p1")
        msgs = drain(again.binding)
        self.assertEqual(_types(msgs), ["resumed", "buffered"])
        self.assertEqual(msgs[1]["data"], "after")

    async def test_batch_requests_are_always_acknowledged(self) -> None:
        mine = await self.orch.connect("p1", path="/tmp")
        other = await self.orch.connect("p1", path="/tmp")
        drain(mine.binding)
        drain(other.binding)

        await self.orch.suspend_project("p1", requester=mine.binding)
        self.assertEqual(
            drain(mine.binding),
            [{"type": "suspended", "sessionId": mine.session.id, "message": "Suspended 2 session(s)", "count": 2}],
        )
        self.assertEqual(_types(drain(other.binding)), ["suspended"])

        await self.orch.suspend_project("p1", requester=mine.binding)
        self.assertEqual([m["count"] for m in drain(mine.binding)], [0])
        self.assertEqual(drain(other.binding), [])

        self.discovery.spawned[0].emit(b"queued")
        await self.orch.resume_project("p1", requester=mine.binding)
        msgs = drain(mine.binding)
        self.assertEqual(_types(msgs), ["resumed", "buffered"])
        self.assertEqual((msgs[0]["count"], msgs[0]["expired"]), (2, []))
        self.assertEqual(msgs[1]["data"], "queued")
        self.assertEqual(_types(drain(other.binding)), ["resumed"])

        await self.orch.resume_project("p1", requester=mine.binding)
        msgs = drain(mine.binding)
        self.assertEqual(_types(msgs), ["resumed"])
        self.assertEqual(msgs[0]["count"], 0)

    async def test_env_is_recorded_only_when_delivered(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        handle = self.orch.bridge.get(sid)
        await self.orch.suspend_project("p1")
        self.assertFalse(await self.orch.set_env(sid, "SHELLBRIDGE_TEST_MODE", "on"))
        self.assertNotIn("SHELLBRIDGE_TEST_MODE", handle.env)

        await self.orch.resume_project("p1")
        self.assertTrue(await self.orch.set_env(sid, "SHELLBRIDGE_TEST_MODE", "on"))
        self.assertEqual(handle.env["SHELLBRIDGE_TEST_MODE"], "on")

    async def test_process_exit_closes_session(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        sid = res.session.id
        drain(res.binding)
        self.discovery.spawned[0].exit(0)
        self.assertEqual(_types(drain(res.binding)), ["exit", ("close", 1000)])
        self.assertEqual(self.orch.registry.get(sid).status, "closed")

    async def test_control_and_env(self) -> None:
        res = await self.orch.connect("p1", path="/tmp")
        proc = self.discovery.spawned[0]
        await self.orch.send_control(res.session.id, "c")
        await self.orch.set_env(res.session.id, "GREETING", "hello world")
        self.assertEqual(proc.written, [b"\x03", b"export GREETING='hello world'\r"])
        with self.assertRaises(ValueError):
            await self.orch.send_control(res.session.id, "q")
        with self.assertRaises(ValueError):
            await self.orch.set_env(res.session.id, "BAD-NAME", "x")

    async def test_spawn_failure_marks_session_closed(self) -> None:
        from shellbridge.kernel.errors import SpawnExhausted

        orch, _ = make_orchestrator(clock=self.clock, discovery=FakeDiscovery(fail=True))
        with self.assertRaises(SpawnExhausted):
            await orch.connect("p1", path="/tmp")
        self.assertEqual(orch.list_sessions("p1"), [])

    async def test_eviction_notifies_bound_connection(self) -> None:
        orch, _ = make_orchestrator(clock=self.clock, max_sessions_per_project=1)
        first = await orch.connect("p1", path="/tmp")
        drain(first.binding)
        self.clock.advance(1)
        await orch.connect("p1", path="/tmp")
        msgs = drain(first.binding)
        self.assertEqual(_types(msgs), ["error", ("close", 4001)])
        await orch.stop()

    async def test_lifecycle_events_are_fanned_out(self) -> None:
        q = self.orch.subscribe()
        res = await self.orch.connect("p1", path="/tmp")
        self.orch.close_session(res.session.id)
        kinds = []
        while not q.empty():
            kinds.append(q.get_nowait()["kind"])
        self.assertIn("session.created", kinds)
        self.assertIn("session.connected", kinds)
        self.assertEqual(kinds[-1], "session.closed")
        self.orch.unsubscribe(q)


if __name__ == "__main__":
    unittest.main()
