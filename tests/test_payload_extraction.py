import unittest


class TestPayloadExtraction(unittest.TestCase):
    def test_variants(self) -> None:
        from oclb.kernel.payload import ContentPayload, EmptyPayload, PartsPayload, TextPayload, parse_payload

        self.assertIsInstance(parse_payload("hi"), TextPayload)
        self.assertIsInstance(parse_payload({"text": "hi"}), TextPayload)
        self.assertIsInstance(parse_payload({"content": "hi"}), ContentPayload)
        self.assertIsInstance(parse_payload({"parts": []}), PartsPayload)
        self.assertIsInstance(parse_payload({"type": "server.connected"}), EmptyPayload)
        self.assertIsInstance(parse_payload(None), EmptyPayload)
        self.assertIsInstance(parse_payload(42), EmptyPayload)

    def test_parts_concatenate_text_parts_in_order(self) -> None:
        from oclb.kernel.payload import parse_payload

        raw = {
            "parts": [
                {"type": "text", "text": "Hel"},
                {"type": "tool", "tool": "bash"},
                {"type": "text", "text": "lo"},
                "junk",
            ]
        }
        self.assertEqual(parse_payload(raw).text(), "Hello")

    def test_content_wins_over_text(self) -> None:
        from oclb.kernel.payload import parse_payload

        self.assertEqual(parse_payload({"content": "a", "text": "b"}).text(), "a")

    def test_session_id_sources(self) -> None:
        from oclb.kernel.payload import parse_payload

        self.assertEqual(parse_payload({"text": "x", "sessionId": "s1"}).session_id, "s1")
        self.assertEqual(parse_payload({"text": "x", "sessionID": "s2"}).session_id, "s2")
        self.assertEqual(parse_payload({"text": "x", "session_id": "s3"}).session_id, "s3")
        self.assertEqual(parse_payload({"parts": [], "info": {"sessionID": "s4"}}).session_id, "s4")
        self.assertIsNone(parse_payload("plain").session_id)

    def test_has_reply(self) -> None:
        from oclb.kernel.payload import has_reply

        self.assertTrue(has_reply({"parts": []}))
        self.assertTrue(has_reply({"text": "hi"}))
        self.assertFalse(has_reply({"text": ""}))
        self.assertFalse(has_reply({"ok": True}))
        self.assertFalse(has_reply("hi"))


if __name__ == "__main__":
    unittest.main()
