import io
import json
import logging
import unittest


class TestObslog(unittest.TestCase):
    def test_jsonl_formatter_includes_correlation_keys(self) -> None:
        from oclb.util.obslog import JsonlFormatter

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonlFormatter(component="test"))
        log = logging.getLogger("oclb.test.obslog")
        log.propagate = False
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        try:
            log.info("hello %s", "x", extra={"chat_id": "c1", "direction": "to_chat"})
        finally:
            log.removeHandler(handler)

        doc = json.loads(stream.getvalue().strip())
        self.assertEqual(doc["msg"], "hello x")
        self.assertEqual(doc["component"], "test")
        self.assertEqual(doc["logger"], "oclb.test.obslog")
        self.assertEqual(doc["chat_id"], "c1")
        self.assertEqual(doc["direction"], "to_chat")
        self.assertNotIn("session_id", doc)

    def test_log_ring_is_bounded_and_notifies(self) -> None:
        from oclb.util.obslog import LogRing

        ring = LogRing(capacity=3)
        seen = []
        remove = ring.add_listener(seen.append)
        log = logging.getLogger("oclb.test.ring")
        log.propagate = False
        log.addHandler(ring)
        log.setLevel(logging.INFO)
        try:
            for i in range(5):
                log.info("m%d", i)
            remove()
            log.info("after")
        finally:
            log.removeHandler(ring)

        self.assertEqual([e["msg"] for e in ring.tail(10)], ["m3", "m4", "after"])
        self.assertEqual([e["msg"] for e in ring.tail(1)], ["after"])
        self.assertEqual(len(seen), 5)


if __name__ == "__main__":
    unittest.main()
