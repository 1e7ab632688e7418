import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from plugin_runtime.domain.recovery import (
    CIRCUIT_CLOSED,
    CIRCUIT_HALF_OPEN,
    CIRCUIT_OPEN,
    CircuitBreaker,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def plugin_component(name: str) -> str:
    return f"plugin:{name}"


class CircuitOpenError(ValueError):
    def __init__(self, component: str, next_attempt_at: Optional[float]):
        self.component = component
        self.next_attempt_at = next_attempt_at
        super().__init__(f"circuit open for {component}")


class CircuitBreakerRegistry:
    """Per-component breakers.

    Successes erode the failure count by ``success_decrement`` instead of
    resetting it, except for the HALF_OPEN trial call which closes the breaker
    outright.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        failure_threshold: int = 5,
        recovery_timeout_ms: int = 60000,
        success_decrement: int = 1,
    ) -> None:
        self._clock = clock or time.monotonic
        self._default_threshold = max(1, int(failure_threshold))
        self._default_recovery_ms = max(0, int(recovery_timeout_ms))
        self._success_decrement = max(0, int(success_decrement))
        self._breakers: Dict[str, CircuitBreaker] = {}

    def ensure(
        self,
        component: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout_ms: Optional[int] = None,
    ) -> CircuitBreaker:
        breaker = self._breakers.get(component)
        if breaker is None:
            breaker = CircuitBreaker(
                id=f"cb-{uuid.uuid4().hex[:12]}",
                component=component,
                failure_threshold=max(1, int(failure_threshold or self._default_threshold)),
                recovery_timeout_ms=int(
                    self._default_recovery_ms if recovery_timeout_ms is None else recovery_timeout_ms
                ),
            )
            self._breakers[component] = breaker
        return breaker

    def get(self, component: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(component)

    def remove(self, component: str) -> bool:
        return self._breakers.pop(component, None) is not None

    def list(self) -> List[CircuitBreaker]:
        return [self._breakers[key] for key in sorted(self._breakers)]

    def allow_request(self, component: str) -> bool:
        breaker = self._breakers.get(component)
        if breaker is None or breaker.state == CIRCUIT_CLOSED:
            return True
        if breaker.state == CIRCUIT_OPEN:
            if breaker.next_attempt_time is not None and self._clock() < breaker.next_attempt_time:
                return False
            breaker.state = CIRCUIT_HALF_OPEN
            breaker.trial_in_flight = True
            logger.info("circuit: %s half-open, admitting trial call", component)
            return True
        # HALF_OPEN admits exactly one trial at a time.
        if breaker.trial_in_flight:
            return False
        breaker.trial_in_flight = True
        return True

    def is_open(self, component: str) -> bool:
        breaker = self._breakers.get(component)
        if breaker is None or breaker.state != CIRCUIT_OPEN:
            return False
        return breaker.next_attempt_time is None or self._clock() < breaker.next_attempt_time

    def record_success(self, component: str) -> CircuitBreaker:
        breaker = self.ensure(component)
        breaker.request_count += 1
        breaker.success_count += 1
        if breaker.state == CIRCUIT_HALF_OPEN:
            breaker.state = CIRCUIT_CLOSED
            breaker.failure_count = 0
            breaker.next_attempt_time = None
            breaker.trial_in_flight = False
            logger.info("circuit: %s closed after successful trial", component)
        else:
            breaker.failure_count = max(0, breaker.failure_count - self._success_decrement)
        return breaker

    def record_failure(self, component: str) -> CircuitBreaker:
        breaker = self.ensure(component)
        now = self._clock()
        breaker.request_count += 1
        breaker.failure_count += 1
        breaker.last_failure_time = now
        if breaker.state == CIRCUIT_HALF_OPEN or breaker.failure_count >= breaker.failure_threshold:
            if breaker.state != CIRCUIT_OPEN:
                logger.warning("circuit: %s opened after %d failure(s)", component, breaker.failure_count)
            breaker.state = CIRCUIT_OPEN
            breaker.next_attempt_time = now + breaker.recovery_timeout_ms / 1000.0
            breaker.trial_in_flight = False
        return breaker

    async def call(self, component: str, fn: Callable[[], Union[Any, Awaitable[Any]]]) -> Any:
        self.ensure(component)
        if not self.allow_request(component):
            breaker = self._breakers[component]
            raise CircuitOpenError(component, breaker.next_attempt_time)
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.record_failure(component)
            raise
        self.record_success(component)
        return result

    def statistics(self) -> Dict[str, Any]:
        rows = self.list()
        by_state = {CIRCUIT_CLOSED: 0, CIRCUIT_OPEN: 0, CIRCUIT_HALF_OPEN: 0}
        for breaker in rows:
            by_state[breaker.state] = by_state.get(breaker.state, 0) + 1
        return {
            "total": len(rows),
            "closed": by_state[CIRCUIT_CLOSED],
            "open": by_state[CIRCUIT_OPEN],
            "half_open": by_state[CIRCUIT_HALF_OPEN],
            "success_decrement": self._success_decrement,
        }
