import io
import json
import logging
import tempfile
import unittest
from pathlib import Path


class TestJsonlLogging(unittest.TestCase):
    def test_formatter_lifts_correlation_keys(self) -> None:
        from shellbridge.util.obslog import JsonlFormatter

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonlFormatter(component="test"))
        log = logging.getLogger("shellbridge.test.obslog")
        log.propagate = False
        log.addHandler(handler)
        try:
            log.warning("evicted", extra={"session_id": "s1", "project_id": "p1", "op": "evict"})
        finally:
            log.removeHandler(handler)

        doc = json.loads(stream.getvalue().strip())
        self.assertEqual(doc["component"], "test")
        self.assertEqual(doc["level"], "WARNING")
        self.assertEqual(doc["msg"], "evicted")
        self.assertEqual((doc["session_id"], doc["project_id"], doc["op"]), ("s1", "p1", "evict"))


class TestSinks(unittest.TestCase):
    def test_make_sink_defaults_to_null(self) -> None:
        from shellbridge.kernel.sinks import LoggingSink, make_sink

        sink = make_sink("none")
        self.assertIsInstance(sink, LoggingSink)
        self.assertEqual(sink.name, "none")
        sink.record_input("s1", "ls\r")

    def test_jsonl_sink_appends_events(self) -> None:
        from shellbridge.kernel.sinks import make_sink

        with tempfile.TemporaryDirectory() as td:
            sink = make_sink("jsonl", home=Path(td))
            sink.session_started("s1", "p1", shell="/bin/sh", cwd="/tmp")
            sink.record_input("s1", "ls\r")
            sink.record_output("s1", "a b c\r\n")
            sink.session_ended("s1", reason="client_closed")
            sink.close()
            sink.record_input("s1", "after close")
            lines = (Path(td) / "logs" / "sessions.jsonl").read_text(encoding="utf-8").splitlines()

        kinds = [json.loads(line)["kind"] for line in lines]
        self.assertEqual(kinds, ["session.started", "input", "output", "session.ended"])


    def test_jsonl_sink_can_skip_output(self) -> None:
        from shellbridge.kernel.sinks import make_sink

        with tempfile.TemporaryDirectory() as td:
            sink = make_sink("jsonl", home=Path(td), record_output=False)
            sink.record_input("s1", "ls\r")
            sink.record_output("s1", "secret\r\n")
            sink.close()
            lines = (Path(td) / "logs" / "sessions.jsonl").read_text(encoding="utf-8").splitlines()

        self.assertEqual([json.loads(line)["kind"] for line in lines], ["input"])

if __name__ == "__main__":
    unittest.main()
