import unittest


class TestCloseCodeClassification(unittest.TestCase):
    def test_classes(self) -> None:
        from shellbridge.ports.web.gateway import classify_close_code

        self.assertEqual(classify_close_code(1000), "intentional")
        self.assertEqual(classify_close_code(1001), "reload")
        self.assertEqual(classify_close_code(4000), "limit")
        self.assertEqual(classify_close_code(4050), "limit")
        self.assertEqual(classify_close_code(4099), "limit")
        self.assertEqual(classify_close_code(4100), "network")
        self.assertEqual(classify_close_code(1006), "network")
        self.assertEqual(classify_close_code(None), "network")


if __name__ == "__main__":
    unittest.main()
