import unittest
from types import SimpleNamespace

from interfaces.telegram.handlers import (
    _build_external_context,
    _command_argument,
    is_tweet_url,
)


class TweetUrlTests(unittest.TestCase):
    def test_accepts_twitter_and_x_status_links(self):
        for url in (
            "https://twitter.com/pixelponies/status/1790000000000000000",
            "https://x.com/pixel_ponies/status/1790000000000000000?s=20",
            "http://mobile.twitter.com/someone/status/1",
            "https://www.x.com/someone/status/42",
        ):
            self.assertTrue(is_tweet_url(url), url)

    def test_rejects_other_links(self):
        for url in (
            "",
            None,
            "https://x.com/pixelponies",
            "https://example.com/someone/status/1",
            "https://x.com/someone/status/abc",
        ):
            self.assertFalse(is_tweet_url(url), url)


class MessageParsingTests(unittest.TestCase):
    def test_command_argument(self):
        self.assertEqual(_command_argument("/horse 5"), "5")
        self.assertEqual(_command_argument("/verify   https://x.com/a/status/1 "), "https://x.com/a/status/1")
        self.assertEqual(_command_argument("/race"), "")
        self.assertEqual(_command_argument(None), "")

    def test_external_context_from_telegram_user(self):
        from_user = SimpleNamespace(id=123456, first_name="Alice", username=None)

        ctx = _build_external_context(from_user)

        self.assertEqual(ctx.provider, "telegram")
        self.assertEqual(ctx.provider_user_id, "123456")
        self.assertEqual(ctx.username, "")


if __name__ == "__main__":
    unittest.main()
