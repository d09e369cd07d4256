import unittest

import httpx

from tibiavote.media import NotAnImage, PayloadTooLarge, UpstreamError
from tibiavote.retry import error_status, is_retriable, run_with_retry


class RetryPolicyTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.calls = 0
        self.waits = []

    def record_wait(self, details):
        self.waits.append(details["wait"])

    async def test_server_error_then_success_waits_once(self):
        async def flaky():
            self.calls += 1
            if self.calls == 1:
                raise UpstreamError("Upstream error: 500", status=500)
            return "ok"

        result = await run_with_retry(flaky, factor=0, on_backoff=self.record_wait)

        self.assertEqual(result, "ok")
        self.assertEqual(self.calls, 2)
        self.assertEqual(len(self.waits), 1)

    async def test_not_found_is_never_retried(self):
        async def missing():
            self.calls += 1
            raise UpstreamError("Upstream error: 404", status=404)

        with self.assertRaises(UpstreamError):
            await run_with_retry(missing, factor=0, on_backoff=self.record_wait)

        self.assertEqual(self.calls, 1)
        self.assertEqual(self.waits, [])

    async def test_rate_limit_is_retried_until_attempts_run_out(self):
        async def limited():
            self.calls += 1
            raise UpstreamError("Upstream error: 429", status=429)

        with self.assertRaises(UpstreamError):
            await run_with_retry(limited, factor=0, on_backoff=self.record_wait)

        self.assertEqual(self.calls, 4)
        self.assertEqual(len(self.waits), 3)

    async def test_backoff_doubles_from_half_a_second(self):
        async def down():
            self.calls += 1
            raise ConnectionError("reset")

        waits = []
        with self.assertRaises(ConnectionError):
            await run_with_retry(
                down,
                attempts=2,
                on_backoff=lambda details: waits.append(details["wait"]),
            )

        self.assertEqual(self.calls, 2)
        self.assertEqual(waits, [0.5])


class RetriableTests(unittest.TestCase):
    def test_statuses(self):
        self.assertTrue(is_retriable(UpstreamError("reset")))
        self.assertTrue(is_retriable(UpstreamError("boom", status=503)))
        self.assertTrue(is_retriable(RuntimeError("db down")))
        self.assertFalse(is_retriable(UpstreamError("gone", status=410)))
        self.assertFalse(is_retriable(NotAnImage()))
        self.assertFalse(is_retriable(PayloadTooLarge()))

    def test_http_status_error(self):
        request = httpx.Request("GET", "https://static.wikia.nocookie.net/a.png")
        response = httpx.Response(502, request=request)
        exc = httpx.HTTPStatusError("bad gateway", request=request, response=response)
        self.assertEqual(error_status(exc), 502)
        self.assertTrue(is_retriable(exc))


if __name__ == "__main__":
    unittest.main()
