import unittest


class TestSeenWindow(unittest.TestCase):
    def test_add_reports_duplicates(self) -> None:
        from oclb.kernel.dedup import SeenWindow

        w = SeenWindow(capacity=10)
        self.assertTrue(w.add("m1"))
        self.assertFalse(w.add("m1"))
        self.assertIn("m1", w)
        self.assertEqual(len(w), 1)

    def test_evicts_oldest_once_full(self) -> None:
        from oclb.kernel.dedup import SeenWindow

        w = SeenWindow(capacity=2)
        w.add("a")
        w.add("b")
        w.add("c")
        self.assertNotIn("a", w)
        self.assertIn("b", w)
        self.assertIn("c", w)
        # An evicted key is accepted again.
        self.assertTrue(w.add("a"))

    def test_fingerprint_ignores_whitespace_layout(self) -> None:
        from oclb.kernel.dedup import fingerprint

        self.assertEqual(fingerprint("hello  world\n"), fingerprint(" hello world"))
        self.assertNotEqual(fingerprint("hello world"), fingerprint("hello, world"))


if __name__ == "__main__":
    unittest.main()
