import unittest

from plugin_runtime.domain.recovery import CIRCUIT_CLOSED, CIRCUIT_HALF_OPEN, CIRCUIT_OPEN
from plugin_runtime.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCircuitBreaker(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.breakers = CircuitBreakerRegistry(clock=self.clock, failure_threshold=3, recovery_timeout_ms=10000)

    def test_opens_at_threshold_and_rejects_until_timeout(self):
        for _ in range(2):
            self.breakers.record_failure("db")
        self.assertEqual(self.breakers.get("db").state, CIRCUIT_CLOSED)
        breaker = self.breakers.record_failure("db")
        self.assertEqual(breaker.state, CIRCUIT_OPEN)
        self.assertEqual(breaker.next_attempt_time, 1010.0)

        self.assertFalse(self.breakers.allow_request("db"))
        self.assertTrue(self.breakers.is_open("db"))

        self.clock.now = 1010.0
        self.assertTrue(self.breakers.allow_request("db"))
        self.assertEqual(breaker.state, CIRCUIT_HALF_OPEN)
        # Only one trial call while half-open.
        self.assertFalse(self.breakers.allow_request("db"))

    def test_half_open_success_closes_and_resets(self):
        for _ in range(3):
            self.breakers.record_failure("db")
        self.clock.now += 10
        self.breakers.allow_request("db")
        breaker = self.breakers.record_success("db")
        self.assertEqual(breaker.state, CIRCUIT_CLOSED)
        self.assertEqual(breaker.failure_count, 0)
        self.assertTrue(self.breakers.allow_request("db"))

    def test_half_open_failure_reopens(self):
        for _ in range(3):
            self.breakers.record_failure("db")
        self.clock.now += 10
        self.breakers.allow_request("db")
        breaker = self.breakers.record_failure("db")
        self.assertEqual(breaker.state, CIRCUIT_OPEN)
        self.assertEqual(breaker.next_attempt_time, self.clock.now + 10)

    def test_closed_success_decrements_failure_count(self):
        self.breakers.record_failure("db")
        self.breakers.record_failure("db")
        breaker = self.breakers.record_success("db")
        self.assertEqual(breaker.failure_count, 1)
        self.breakers.record_success("db")
        self.breakers.record_success("db")
        self.assertEqual(breaker.failure_count, 0)
        self.assertEqual(breaker.request_count, 5)
        self.assertEqual(breaker.success_count, 3)

    def test_success_decrement_is_configurable(self):
        breakers = CircuitBreakerRegistry(clock=self.clock, failure_threshold=10, success_decrement=5)
        for _ in range(7):
            breakers.record_failure("api")
        self.assertEqual(breakers.record_success("api").failure_count, 2)

    def test_statistics(self):
        self.breakers.ensure("a")
        for _ in range(3):
            self.breakers.record_failure("b")
        stats = self.breakers.statistics()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["open"], 1)
        self.assertEqual(stats["closed"], 1)


class TestCircuitBreakerCall(unittest.IsolatedAsyncioTestCase):
    async def test_call_fails_fast_when_open(self):
        clock = _Clock()
        breakers = CircuitBreakerRegistry(clock=clock, failure_threshold=1, recovery_timeout_ms=5000)

        async def _boom():
            raise RuntimeError("down")

        with self.assertRaises(RuntimeError):
            await breakers.call("svc", _boom)
        with self.assertRaises(CircuitOpenError) as ctx:
            await breakers.call("svc", lambda: "never")
        self.assertTrue(str(ctx.exception).startswith("circuit open"))
        self.assertEqual(ctx.exception.component, "svc")
        self.assertEqual(ctx.exception.next_attempt_at, 1005.0)

        clock.now = 1005.0
        self.assertEqual(await breakers.call("svc", lambda: "back"), "back")
        self.assertEqual(breakers.get("svc").state, CIRCUIT_CLOSED)


if __name__ == "__main__":
    unittest.main()
