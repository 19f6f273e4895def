import unittest
from dataclasses import replace


def _registry(**overrides):
    from shellbridge.kernel.registry import SessionRegistry
    from shellbridge.kernel.settings import TerminalSettings
    from shellbridge.util.time import ManualClock

    clock = ManualClock()
    events = []
    reg = SessionRegistry(replace(TerminalSettings(), **overrides), clock=clock, observer=events.append)
    return reg, clock, events


class TestSessionRegistry(unittest.TestCase):
    def test_create_assigns_id_tab_and_focus(self) -> None:
        reg, _, events = _registry()
        s1 = reg.create_session("p1", "/tmp")
        s2 = reg.create_session("p1", "/tmp")
        self.assertTrue(s1.id.startswith("session_"))
        self.assertNotEqual(s1.id, s2.id)
        self.assertEqual(s1.tab_name, "Terminal 1")
        self.assertEqual(s2.tab_name, "Terminal 2")
        self.assertEqual(s1.status, "connecting")
        self.assertTrue(s1.focused and s2.focused)
        self.assertEqual([e.kind for e in events], ["session.created", "session.created"])

    def test_requested_id_reuse(self) -> None:
        reg, _, _ = _registry()
        s = reg.create_session("p1", "/tmp", session_id="abc")
        self.assertEqual(s.id, "abc")
        with self.assertRaises(ValueError):
            reg.create_session("p1", "/tmp", session_id="abc")
        reg.close_session("abc")
        again = reg.create_session("p1", "/tmp", session_id="abc")
        self.assertEqual(again.status, "connecting")
        self.assertIs(reg.get("abc"), again)

    def test_focus_cap_unfocuses_least_recently_active(self) -> None:
        reg, clock, _ = _registry(max_focused_per_project=2)
        a = reg.create_session("p1", "/tmp")
        clock.advance(1)
        b = reg.create_session("p1", "/tmp")
        clock.advance(1)
        c = reg.create_session("p1", "/tmp")
        self.assertFalse(c.focused)

        clock.advance(1)
        reg.touch(a.id)
        clock.advance(1)
        unfocused = reg.set_focus(c.id, True)
        self.assertEqual(unfocused, [b.id])
        self.assertEqual(sorted(reg.focused_sessions("p1")), sorted([a.id, c.id]))
        # Unfocused, not closed.
        self.assertEqual(reg.get(b.id).status, "connecting")

    def test_focus_is_per_project(self) -> None:
        reg, _, _ = _registry(max_focused_per_project=1)
        a = reg.create_session("p1", "/tmp")
        b = reg.create_session("p2", "/tmp")
        self.assertTrue(a.focused)
        self.assertTrue(b.focused)

    def test_project_capacity_evicts_least_recently_active(self) -> None:
        reg, clock, events = _registry(max_sessions_per_project=2)
        a = reg.create_session("p1", "/tmp")
        clock.advance(1)
        b = reg.create_session("p1", "/tmp")
        clock.advance(1)
        reg.touch(a.id)
        c = reg.create_session("p1", "/tmp")
        self.assertEqual(reg.get(b.id).status, "closed")
        self.assertEqual([s.id for s in reg.list_sessions("p1")], [a.id, c.id])
        closed = [e for e in events if e.kind == "session.closed"]
        self.assertEqual(closed[0].data["reason"], "project_capacity")

    def test_global_capacity(self) -> None:
        reg, clock, _ = _registry(max_total_sessions=3)
        ids = []
        for pid in ("p1", "p2", "p3", "p4"):
            ids.append(reg.create_session(pid, "/tmp").id)
            clock.advance(1)
        self.assertEqual(len(reg.list_sessions()), 3)
        self.assertEqual(reg.get(ids[0]).status, "closed")

    def test_default_global_cap_evicts_exactly_one(self) -> None:
        reg, clock, events = _registry()
        created = []
        for i in range(51):
            created.append(reg.create_session(f"p{i % 6}", "/tmp").id)
            self.assertLessEqual(len(reg.list_sessions()), 50)
            clock.advance(1)
        closed = [e.session.id for e in events if e.kind == "session.closed"]
        self.assertEqual(closed, [created[0]])
        self.assertEqual(len(reg.list_sessions()), 50)

    def test_zero_capacity_rejects(self) -> None:
        from shellbridge.kernel.errors import CapacityExceeded

        reg, _, _ = _registry(max_sessions_per_project=0)
        with self.assertRaises(CapacityExceeded):
            reg.create_session("p1", "/tmp")

    def test_rate_limit_applies_to_creation(self) -> None:
        from shellbridge.kernel.errors import CircuitBreakerOpen, CreationRateExceeded

        reg, _, _ = _registry(max_creations_per_minute=3)
        for _ in range(3):
            reg.create_session("p1", "/tmp")
        with self.assertRaises(CreationRateExceeded):
            reg.create_session("p1", "/tmp")
        with self.assertRaises(CircuitBreakerOpen):
            reg.create_session("p1", "/tmp")
        self.assertEqual(len(reg.list_sessions("p1")), 3)

    def test_invalid_transition(self) -> None:
        from shellbridge.kernel.errors import InvalidTransition

        reg, _, _ = _registry()
        s = reg.create_session("p1", "/tmp")
        with self.assertRaises(InvalidTransition):
            reg.set_status(s.id, "suspended")
        reg.set_status(s.id, "active")
        reg.set_status(s.id, "error")
        with self.assertRaises(InvalidTransition):
            reg.set_status(s.id, "active")
        reg.set_status(s.id, "closed")
        with self.assertRaises(InvalidTransition):
            reg.set_status(s.id, "active")

    def test_closed_sessions_purged_after_retention(self) -> None:
        reg, clock, _ = _registry(closed_retention_seconds=5)
        s = reg.create_session("p1", "/tmp")
        reg.close_session(s.id)
        self.assertIsNotNone(reg.get(s.id))
        self.assertEqual(reg.list_sessions(), [])
        clock.advance(2)
        self.assertEqual(reg.sweep()["purged"], [])
        clock.advance(4)
        self.assertEqual(reg.sweep()["purged"], [s.id])
        self.assertIsNone(reg.get(s.id))

    def test_close_oldest(self) -> None:
        reg, clock, _ = _registry()
        ids = []
        for _ in range(4):
            ids.append(reg.create_session("p1", "/tmp").id)
            clock.advance(1)
        self.assertEqual(reg.close_oldest(2, reason="memory_pressure"), ids[:2])
        self.assertEqual([s.id for s in reg.list_sessions()], ids[2:])


if __name__ == "__main__":
    unittest.main()
