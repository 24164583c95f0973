import asyncio
import base64
import os
import unittest
from datetime import datetime, timedelta, timezone

os.environ.setdefault("JWT_SECRET", "campuslink-test-secret-0123456789abcdef")

from fastapi import HTTPException

import core


class TestCoreGuards(unittest.TestCase):
    def test_detect_mime_by_signature(self):
        self.assertEqual(core.detect_mime(b"\xff\xd8\xff\xe0rest"), "image/jpeg")
        self.assertEqual(core.detect_mime(b"%PDF-1.7\n"), "application/pdf")
        self.assertEqual(core.detect_mime(b"RIFF\x00\x00\x00\x00WEBPVP8 "), "image/webp")
        self.assertEqual(core.detect_mime(b"hello"), "application/octet-stream")

    def test_allowed_content_uses_signature_over_declared(self):
        detected = core.ensure_allowed_content(b"\x89PNG\r\n\x1a\n...", "application/pdf", core.IMAGE_MIME_TYPES)
        self.assertEqual(detected, "image/png")
        with self.assertRaises(HTTPException) as ctx:
            core.ensure_allowed_content(b"%PDF-1.4", "image/png", core.IMAGE_MIME_TYPES)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Only image files", ctx.exception.detail)

    def test_inline_image_validation(self):
        self.assertIsNone(core.validate_inline_image("  "))
        good = "data:image/gif;base64," + base64.b64encode(b"GIF89a" + b"\x00" * 8).decode()
        self.assertEqual(core.validate_inline_image(good), good)
        for bad in ("http://example.com/a.png", "data:image/png;base64,!!!"):
            with self.assertRaises(HTTPException):
                core.validate_inline_image(bad)

    def test_normalize_choice_and_require_text(self):
        self.assertEqual(core.normalize_choice(" lab ", {"lab"}, "type"), "lab")
        with self.assertRaises(HTTPException) as ctx:
            core.normalize_choice("Lab", {"lab"}, "type")
        self.assertEqual(ctx.exception.detail, "Invalid type")
        with self.assertRaises(HTTPException) as ctx:
            core.require_text("a", "Name", min_length=2)
        self.assertIn("at least 2", ctx.exception.detail)

    def test_sort_and_pagination(self):
        self.assertEqual(core.get_sort("title", "asc", {"title"}), [("title", 1)])
        with self.assertRaises(HTTPException):
            core.get_sort("password_hash", "asc", {"title"})
        with self.assertRaises(HTTPException):
            core.get_sort("title", "sideways", {"title"})
        self.assertEqual(core.page_window(3, 10), (20, 10))
        self.assertEqual(core.page_window(0, 1000), (0, core.MAX_PAGE_SIZE))
        self.assertEqual(
            core.build_pagination(2, 10, 5, 15),
            {"current": 2, "total": 2, "count": 5, "total_count": 15},
        )

    def test_search_filter_escapes_regex(self):
        self.assertIsNone(core.search_filter("  ", ["title"]))
        query = core.search_filter("a+b", ["title", "description"])
        self.assertEqual(query["$or"][0]["title"]["$regex"], r"a\+b")
        self.assertEqual(len(query["$or"]), 2)

    def test_owner_or_admin(self):
        core.ensure_owner_or_admin("u1", {"id": "u1", "role": "student"})
        core.ensure_owner_or_admin("u1", {"id": "u2", "role": "admin"})
        with self.assertRaises(HTTPException) as ctx:
            core.ensure_owner_or_admin("u1", {"id": "u2", "role": "student"}, "Nope")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.detail, "Nope")

    def test_ensure_aware_treats_naive_as_utc(self):
        naive = datetime(2030, 1, 1, 9, 0)
        self.assertEqual(core.ensure_aware(naive), datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc))
        nairobi = timezone(timedelta(hours=3))
        self.assertEqual(core.ensure_aware(datetime(2030, 1, 1, 12, 0, tzinfo=nairobi)).hour, 9)

    def test_password_hashing(self):
        hashed = core.hash_password("secret123")
        self.assertTrue(core.verify_password("secret123", hashed))
        self.assertFalse(core.verify_password("secret124", hashed))


class TestRateLimiter(unittest.TestCase):
    def test_blocks_after_limit(self):
        limiter = core.InMemoryRateLimiter()

        async def run():
            await limiter.check("k", limit=2, window_seconds=60)
            await limiter.check("k", limit=2, window_seconds=60)
            await limiter.check("other", limit=2, window_seconds=60)
            with self.assertRaises(HTTPException) as ctx:
                await limiter.check("k", limit=2, window_seconds=60)
            self.assertEqual(ctx.exception.status_code, 429)

        asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
