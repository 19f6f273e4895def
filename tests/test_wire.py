import unittest


class TestInboundMessages(unittest.TestCase):
    def test_valid_messages(self) -> None:
        from shellbridge.contracts.v1 import parse_inbound

        self.assertEqual(parse_inbound('{"type":"input","data":"ls\\n"}').data, "ls\n")
        msg = parse_inbound('{"type":"resize","rows":40,"cols":120}')
        self.assertEqual((msg.rows, msg.cols), (40, 120))
        self.assertEqual(parse_inbound('{"type":"ping"}').type, "ping")
        self.assertEqual(parse_inbound('{"type":"ctrl","key":"c"}').key, "c")

    def test_invalid_messages(self) -> None:
        from shellbridge.contracts.v1 import InvalidMessage, parse_inbound

        for raw in (
            "not json",
            "[1,2]",
            '{"type":"explode"}',
            '{"type":"input"}',
            '{"type":"resize","rows":0,"cols":10}',
            '{"type":"env","key":"A"}',
        ):
            with self.assertRaises(InvalidMessage, msg=raw):
                parse_inbound(raw)

    def test_stream_tags_unfocused(self) -> None:
        from shellbridge.contracts.v1 import wire

        self.assertEqual(wire.stream("x", focused=True), {"type": "stream", "data": "x"})
        self.assertTrue(wire.stream("x", focused=False)["unfocused"])
        self.assertEqual(wire.focus_update("s1", True, ["s1"])["allFocused"], ["s1"])


if __name__ == "__main__":
    unittest.main()
