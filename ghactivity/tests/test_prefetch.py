import unittest
from datetime import datetime, timedelta, timezone

from ghactivity.errors import FilterFingerprintMismatchError, InvalidTokenError, TokenExpiredError
from ghactivity.services.prefetch import (
    build_window,
    issue_token,
    sign_token,
    token_expires_at,
    total_pages,
    verify_token,
)

SECRET = "test-secret"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class PrefetchWindowTests(unittest.TestCase):
    def test_window_over_fewer_rows_than_requested(self) -> None:
        window = build_window(page=1, per_page=1, prefetch_pages=3)
        rows = ["a", "b"]
        self.assertEqual(window.fetch_limit, 4)
        self.assertEqual(window.buffered_pages(len(rows)), 2)
        self.assertFalse(window.has_more(len(rows)))
        self.assertEqual(window.split(rows), [["a"], ["b"]])

    def test_look_ahead_row_signals_more(self) -> None:
        window = build_window(page=2, per_page=2, prefetch_pages=2)
        rows = ["a", "b", "c", "d", "e"]
        self.assertEqual(window.offset, 2)
        self.assertTrue(window.has_more(len(rows)))
        self.assertEqual(window.buffered_pages(len(rows)), 2)
        self.assertEqual(window.split(rows), [["a", "b"], ["c", "d"]])

    def test_prefetch_pages_and_page_size_are_clamped(self) -> None:
        self.assertEqual(build_window(1, 25, 25).requested_pages, 10)
        self.assertEqual(build_window(1, 25, 0).requested_pages, 1)
        self.assertEqual(build_window(1, 500, 1).per_page, 100)
        self.assertEqual(build_window(1, "junk", "junk").per_page, 25)
        self.assertEqual(build_window(-3, 25, 1).page, 1)

    def test_total_pages(self) -> None:
        self.assertEqual(total_pages(0, 25), 0)
        self.assertEqual(total_pages(25, 25), 1)
        self.assertEqual(total_pages(26, 25), 2)


class PrefetchTokenTests(unittest.TestCase):
    def setUp(self) -> None:
        window = build_window(page=1, per_page=25, prefetch_pages=3)
        self.value, self.token = issue_token(window, "fp-1", 3, now=NOW, secret=SECRET)

    def test_round_trip_carries_window(self) -> None:
        token = verify_token(self.value, "fp-1", now=NOW + timedelta(seconds=30), secret=SECRET, ttl_seconds=300)
        self.assertEqual(token, self.token)
        self.assertEqual(token.requestedPages, 3)
        self.assertEqual(token.bufferedPages, 3)
        self.assertEqual(token.createdAt, "2024-05-01T12:00:00Z")

    def test_changed_filters_conflict(self) -> None:
        with self.assertRaises(FilterFingerprintMismatchError):
            verify_token(self.value, "fp-2", now=NOW, secret=SECRET, ttl_seconds=300)

    def test_expired_token(self) -> None:
        with self.assertRaises(TokenExpiredError):
            verify_token(self.value, "fp-1", now=NOW + timedelta(seconds=301), secret=SECRET, ttl_seconds=300)

    def test_expiry_is_checked_before_fingerprint(self) -> None:
        with self.assertRaises(TokenExpiredError):
            verify_token(self.value, "fp-2", now=NOW + timedelta(hours=1), secret=SECRET, ttl_seconds=300)

    def test_tampered_or_foreign_tokens_are_rejected(self) -> None:
        body, _, signature = self.value.partition(".")
        with self.assertRaises(InvalidTokenError):
            verify_token(f"{body}x.{signature}", "fp-1", now=NOW, secret=SECRET)
        with self.assertRaises(InvalidTokenError):
            verify_token(self.value, "fp-1", now=NOW, secret="another-secret")
        with self.assertRaises(InvalidTokenError):
            verify_token("", "fp-1", now=NOW, secret=SECRET)
        with self.assertRaises(InvalidTokenError):
            verify_token("no-dot", "fp-1", now=NOW, secret=SECRET)
        for value in (f"{body}.\u00e9", f"\u00e9.{signature}"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidTokenError):
                    verify_token(value, "fp-1", now=NOW, secret=SECRET)

    def test_signature_is_deterministic(self) -> None:
        self.assertEqual(sign_token(self.token, SECRET), self.value)
        self.assertNotEqual(sign_token(self.token, "another-secret"), self.value)

    def test_expiry_timestamp(self) -> None:
        self.assertIsNotNone(token_expires_at(self.token))


if __name__ == "__main__":
    unittest.main()
