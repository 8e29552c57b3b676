from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from dealdesk.security.share_tokens import generate_share_token, hash_share_token, is_expired, share_expiry, token_matches


class ShareTokenTests(unittest.TestCase):
    def test_generated_token_matches_its_hash(self) -> None:
        token, token_hash = generate_share_token()
        self.assertGreaterEqual(len(token), 40)
        self.assertEqual(len(token_hash), 64)
        self.assertEqual(hash_share_token(token), token_hash)
        self.assertTrue(token_matches(token, token_hash))

    def test_tokens_are_unique(self) -> None:
        tokens = {generate_share_token()[0] for _ in range(50)}
        self.assertEqual(len(tokens), 50)

    def test_mismatch_and_empty_values(self) -> None:
        token, token_hash = generate_share_token()
        self.assertFalse(token_matches(token + 'x', token_hash))
        self.assertFalse(token_matches('', token_hash))
        self.assertFalse(token_matches(token, None))

    def test_expiry(self) -> None:
        now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        expires = share_expiry(30, now=now)
        self.assertEqual(expires, now + timedelta(days=30))
        self.assertFalse(is_expired(expires, now=now))
        self.assertTrue(is_expired(expires, now=expires))
        self.assertFalse(is_expired(None, now=now))

    def test_naive_expiry_is_treated_as_utc(self) -> None:
        now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.assertTrue(is_expired(datetime(2025, 3, 1, 11, 59), now=now))
        self.assertFalse(is_expired(datetime(2025, 3, 1, 12, 1), now=now))


if __name__ == '__main__':
    unittest.main()
