import time
import unittest

from application.services.rate_limiter import RateLimiter


class TestRateLimiter(unittest.IsolatedAsyncioTestCase):
    async def test_ten_calls_at_two_per_second_take_at_least_four_and_a_half_seconds(self) -> None:
        limiter = RateLimiter(2)
        started = time.monotonic()
        for _ in range(10):
            await limiter.wait()
        elapsed = time.monotonic() - started

        self.assertGreaterEqual(elapsed, 4.4)

    async def test_first_call_is_not_delayed(self) -> None:
        limiter = RateLimiter(1)
        started = time.monotonic()
        await limiter.wait()
        self.assertLess(time.monotonic() - started, 0.5)

    def test_per_minute_converts_rate(self) -> None:
        limiter = RateLimiter.per_minute(120)
        self.assertAlmostEqual(limiter.requests_per_second, 2.0)

    def test_rejects_non_positive_rate(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(0)


if __name__ == "__main__":
    unittest.main()
