"""Error reporting and strategy-driven recovery.

Every reported error is appended to a bounded-retention log and, when auto
recovery is on, matched against the registered strategies. Applicable
strategies run in ascending ``priority``; each attempt is kept as a
``RecoveryAttempt`` row so the audit trail shows what was tried before the
error was resolved or given up on.

Actions are executed by handlers registered per action type. The runtime
context wires ``reload``/``restart``/``retry``/``rollback``/``disable`` to the
registration controller and lifecycle manager; ``notify`` and ``escalate``
publish events out of the box.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from plugin_runtime.domain.recovery import (
    ACTION_TYPES,
    BACKOFF_EXPONENTIAL,
    BACKOFF_FIXED,
    BACKOFF_LINEAR,
    CATEGORIES,
    CATEGORY_CONFIGURATION,
    CATEGORY_MEMORY,
    CATEGORY_PLUGIN_EXECUTION,
    CATEGORY_PLUGIN_LOAD,
    CATEGORY_UNKNOWN,
    SEVERITIES,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    ErrorRecord,
    RecoveryAction,
    RecoveryAttempt,
    RecoveryCondition,
    RecoveryStrategy,
)
from plugin_runtime.events.event_bus import (
    EVENT_ERROR_ESCALATE,
    EVENT_ERROR_NOTIFY,
    EVENT_ERROR_RECOVERED,
    EVENT_ERROR_RECOVERY_FAILED,
    EVENT_ERROR_REPORTED,
    EventBus,
)
from plugin_runtime.services.circuit_breaker import CircuitBreakerRegistry, plugin_component

logger = logging.getLogger(__name__)

ActionHandler = Callable[[ErrorRecord, RecoveryAction], Union[Any, Awaitable[Any]]]

_MISSING = object()


class RecoveryActionError(RuntimeError):
    pass


@dataclass(frozen=True)
class RecoveryOptions:
    auto_recovery: bool = True
    base_delay_ms: int = 1000
    recovery_timeout_ms: int = 30000
    retention_sec: int = 604800


def backoff_delay_ms(backoff_strategy: str, attempt: int, base_delay_ms: int = 1000) -> int:
    """Delay before retry ``attempt`` (1-based)."""
    attempt = max(1, int(attempt))
    if backoff_strategy == BACKOFF_LINEAR:
        return base_delay_ms * attempt
    if backoff_strategy == BACKOFF_EXPONENTIAL:
        return base_delay_ms * 2 ** (attempt - 1)
    return base_delay_ms


def breaker_key(error: ErrorRecord) -> Optional[str]:
    """Same keys the health monitor registers: ``plugin:<name>`` or the bare component id."""
    if error.plugin:
        return plugin_component(error.plugin)
    return error.component or None


def resolve_action_target(error: ErrorRecord, action: RecoveryAction) -> str:
    """``plugin`` and ``component`` targets refer to the error's own fields."""
    if action.target == "plugin" and error.plugin:
        return error.plugin
    if action.target == "component" and error.component:
        return error.component
    return action.target


def default_strategies() -> List[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            id="plugin-load-retry",
            name="Plugin Load Retry",
            description="Retry loading failed plugins",
            applicable_categories=frozenset([CATEGORY_PLUGIN_LOAD]),
            applicable_severities=frozenset([SEVERITY_LOW, SEVERITY_MEDIUM]),
            max_retries=3,
            backoff_strategy=BACKOFF_EXPONENTIAL,
            priority=10,
            timeout_ms=30000,
            actions=(RecoveryAction(type="reload", target="plugin"),),
            conditions=(RecoveryCondition(field="plugin", operator="exists", value=True),),
        ),
        RecoveryStrategy(
            id="plugin-execution-restart",
            name="Plugin Execution Restart",
            description="Restart plugins with execution errors",
            applicable_categories=frozenset([CATEGORY_PLUGIN_EXECUTION]),
            applicable_severities=frozenset([SEVERITY_MEDIUM, SEVERITY_HIGH]),
            max_retries=2,
            backoff_strategy=BACKOFF_LINEAR,
            priority=8,
            timeout_ms=45000,
            actions=(
                RecoveryAction(type="restart", target="plugin"),
                RecoveryAction(type="notify", target="admin"),
            ),
            conditions=(RecoveryCondition(field="plugin", operator="exists", value=True),),
        ),
        RecoveryStrategy(
            id="configuration-rollback",
            name="Configuration Rollback",
            description="Rollback configuration changes",
            applicable_categories=frozenset([CATEGORY_CONFIGURATION]),
            applicable_severities=frozenset([SEVERITY_HIGH, SEVERITY_CRITICAL]),
            max_retries=1,
            backoff_strategy=BACKOFF_FIXED,
            priority=15,
            timeout_ms=60000,
            actions=(
                RecoveryAction(type="rollback", target="plugin", parameters={"version": "previous"}),
                RecoveryAction(type="notify", target="admin"),
            ),
            conditions=(RecoveryCondition(field="context.configChange", operator="exists", value=True),),
        ),
        RecoveryStrategy(
            id="memory-recovery",
            name="Memory Recovery",
            description="Recover from memory errors",
            applicable_categories=frozenset([CATEGORY_MEMORY]),
            applicable_severities=frozenset([SEVERITY_HIGH, SEVERITY_CRITICAL]),
            max_retries=1,
            backoff_strategy=BACKOFF_FIXED,
            priority=20,
            timeout_ms=30000,
            actions=(
                RecoveryAction(type="restart", target="plugin"),
                RecoveryAction(type="escalate", target="system-admin"),
            ),
            conditions=(RecoveryCondition(field="context.memoryUsage", operator="greater_than", value=90),),
        ),
    ]


class ErrorRecoveryManager:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        options: Optional[RecoveryOptions] = None,
        strategies: Optional[Iterable[RecoveryStrategy]] = None,
    ) -> None:
        self._events = events or EventBus()
        self._breakers = breakers
        self._options = options or RecoveryOptions()
        self._errors: Dict[str, ErrorRecord] = {}
        self._attempts: List[RecoveryAttempt] = []
        self._strategies: Dict[str, RecoveryStrategy] = {}
        self._handlers: Dict[str, ActionHandler] = {}
        self._active: Dict[str, bool] = {}
        for strategy in default_strategies() if strategies is None else strategies:
            self.add_strategy(strategy)
        self.register_action_handler("notify", self._notify)
        self.register_action_handler("escalate", self._escalate)

    @property
    def options(self) -> RecoveryOptions:
        return self._options

    # ------------------------------------------------------------------
    # Strategies and handlers
    # ------------------------------------------------------------------

    def add_strategy(self, strategy: RecoveryStrategy) -> None:
        self._strategies[strategy.id] = strategy

    def remove_strategy(self, strategy_id: str) -> bool:
        return self._strategies.pop(strategy_id, None) is not None

    def list_strategies(self) -> List[RecoveryStrategy]:
        return sorted(self._strategies.values(), key=lambda s: s.priority)

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        if action_type not in ACTION_TYPES:
            raise ValueError(f"Unknown recovery action type: {action_type}")
        self._handlers[action_type] = handler

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def report_error(
        self,
        severity: str,
        category: str,
        message: str,
        source: str,
        context: Optional[Dict[str, Any]] = None,
        component: Optional[str] = None,
        plugin: Optional[str] = None,
        stack: str = "",
    ) -> ErrorRecord:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown error severity: {severity}")
        self.prune()
        record = ErrorRecord(
            id=f"error_{uuid.uuid4().hex[:12]}",
            timestamp=datetime.now(timezone.utc),
            severity=severity,
            category=category if category in CATEGORIES else CATEGORY_UNKNOWN,
            message=message,
            source=source,
            context=dict(context or {}),
            component=component,
            plugin=plugin,
            stack=stack,
        )
        self._errors[record.id] = record
        level = logging.ERROR if severity in (SEVERITY_HIGH, SEVERITY_CRITICAL) else logging.WARNING
        logger.log(
            level,
            "recovery: %s error %s [%s] from %s: %s",
            severity,
            record.id,
            record.category,
            source,
            message,
        )
        self._events.publish(EVENT_ERROR_REPORTED, record.to_dict())
        if self._options.auto_recovery:
            await self.attempt_recovery(record.id)
        return record

    async def attempt_recovery(self, error_id: str) -> bool:
        error = self._errors.get(error_id)
        if error is None:
            return False
        if error.resolved:
            return True
        if self._active.get(error_id):
            return False

        strategies = self.applicable_strategies(error)
        if not strategies:
            logger.info("recovery: no applicable strategy for %s", error_id)
            return False

        # Admitting a request may claim the HALF_OPEN trial, which every path below settles.
        key = breaker_key(error)
        tracked = self._breakers is not None and key is not None and self._breakers.get(key) is not None
        if tracked and not self._breakers.allow_request(key):
            logger.info("recovery: circuit open for %s, skipping recovery of %s", key, error_id)
            return False

        self._active[error_id] = True
        try:
            recovered_by = await asyncio.wait_for(
                self._run_strategies(error, strategies),
                timeout=self._options.recovery_timeout_ms / 1000.0,
            )
            detail = "" if recovered_by else "all applicable strategies failed"
        except asyncio.TimeoutError:
            recovered_by = None
            detail = f"Recovery timeout after {self._options.recovery_timeout_ms}ms"
        finally:
            self._active.pop(error_id, None)

        if recovered_by is not None:
            error.resolved = True
            error.resolved_at = datetime.now(timezone.utc)
            error.resolution_method = recovered_by.id
            if tracked:
                self._breakers.record_success(key)
            logger.info("recovery: %s resolved by %s", error_id, recovered_by.id)
            self._events.publish(
                EVENT_ERROR_RECOVERED,
                {"error": error.to_dict(), "strategy_id": recovered_by.id},
            )
            return True

        if tracked:
            self._breakers.record_failure(key)
        logger.warning("recovery: giving up on %s: %s", error_id, detail)
        self._events.publish(
            EVENT_ERROR_RECOVERY_FAILED,
            {
                "error": error.to_dict(),
                "strategies": [s.id for s in strategies],
                "detail": detail,
            },
        )
        return False

    def applicable_strategies(self, error: ErrorRecord) -> List[RecoveryStrategy]:
        matches = [
            s
            for s in self._strategies.values()
            if error.category in s.applicable_categories
            and error.severity in s.applicable_severities
            and all(condition_holds(error, c) for c in s.conditions)
        ]
        return sorted(matches, key=lambda s: s.priority)

    def backoff_delay_ms(self, strategy: RecoveryStrategy, attempt: int) -> int:
        return backoff_delay_ms(strategy.backoff_strategy, attempt, self._options.base_delay_ms)

    async def _run_strategies(self, error: ErrorRecord, strategies: List[RecoveryStrategy]) -> Optional[RecoveryStrategy]:
        for strategy in strategies:
            if await self._run_strategy(error, strategy):
                return strategy
        return None

    async def _run_strategy(self, error: ErrorRecord, strategy: RecoveryStrategy) -> bool:
        for attempt in range(1, max(1, strategy.max_retries) + 1):
            if attempt >= 2:
                await asyncio.sleep(self.backoff_delay_ms(strategy, attempt) / 1000.0)
            started_at = datetime.now(timezone.utc)
            started = time.perf_counter()
            success = False
            try:
                await asyncio.wait_for(self._run_actions(error, strategy), timeout=strategy.timeout_ms / 1000.0)
                success = True
                detail = "ok"
            except asyncio.TimeoutError:
                detail = f"Strategy timeout after {strategy.timeout_ms}ms"
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__
            self._attempts.append(
                RecoveryAttempt(
                    error_id=error.id,
                    strategy_id=strategy.id,
                    attempt=attempt,
                    success=success,
                    detail=detail,
                    started_at=started_at,
                    duration_ms=(time.perf_counter() - started) * 1000.0,
                )
            )
            if success:
                return True
            error.retry_count += 1
            logger.info("recovery: %s attempt %d for %s failed: %s", strategy.id, attempt, error.id, detail)
        return False

    async def _run_actions(self, error: ErrorRecord, strategy: RecoveryStrategy) -> None:
        for action in strategy.actions:
            handler = self._handlers.get(action.type)
            if action.type not in ACTION_TYPES:
                raise RecoveryActionError(f"Unknown recovery action type: {action.type}")
            if handler is None:
                raise RecoveryActionError(f"No handler registered for action '{action.type}'")
            result = handler(error, action)
            if inspect.isawaitable(result):
                result = await result
            if result is False:
                target = resolve_action_target(error, action)
                raise RecoveryActionError(f"Action '{action.type}' on {target} reported failure")

    def _notify(self, error: ErrorRecord, action: RecoveryAction) -> None:
        self._events.publish(
            EVENT_ERROR_NOTIFY,
            {"error": error.to_dict(), "target": action.target, "parameters": dict(action.parameters)},
        )

    def _escalate(self, error: ErrorRecord, action: RecoveryAction) -> None:
        self._events.publish(
            EVENT_ERROR_ESCALATE,
            {"error": error.to_dict(), "target": action.target, "parameters": dict(action.parameters)},
        )

    # ------------------------------------------------------------------
    # Retention and queries
    # ------------------------------------------------------------------

    def prune(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self._options.retention_sec)
        expired = [k for k, e in self._errors.items() if e.timestamp < cutoff and not self._active.get(k)]
        for key in expired:
            del self._errors[key]
        if expired:
            gone = set(expired)
            self._attempts = [a for a in self._attempts if a.error_id not in gone]
        return len(expired)

    def get_error(self, error_id: str) -> Optional[ErrorRecord]:
        return self._errors.get(error_id)

    def list_errors(self, resolved: Optional[bool] = None, limit: int = 200) -> List[ErrorRecord]:
        rows = [e for e in self._errors.values() if resolved is None or e.resolved == resolved]
        return rows[-max(1, limit) :]

    def list_attempts(self, error_id: Optional[str] = None) -> List[RecoveryAttempt]:
        return [a for a in self._attempts if error_id is None or a.error_id == error_id]

    def statistics(self) -> Dict[str, Any]:
        rows = list(self._errors.values())
        resolved = sum(1 for e in rows if e.resolved)
        by_category: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_method: Dict[str, int] = {}
        for error in rows:
            by_category[error.category] = by_category.get(error.category, 0) + 1
            by_severity[error.severity] = by_severity.get(error.severity, 0) + 1
            if error.resolution_method:
                by_method[error.resolution_method] = by_method.get(error.resolution_method, 0) + 1
        return {
            "total": len(rows),
            "resolved": resolved,
            "unresolved": len(rows) - resolved,
            "resolution_rate": (resolved / len(rows)) if rows else 0.0,
            "by_category": by_category,
            "by_severity": by_severity,
            "by_resolution_method": by_method,
            "attempts": len(self._attempts),
            "strategies": len(self._strategies),
        }


def condition_holds(error: ErrorRecord, condition: RecoveryCondition) -> bool:
    value = _lookup(error, condition.field)
    operator = condition.operator
    if operator == "exists":
        return value is not _MISSING and value is not None
    if value is _MISSING:
        return False
    if operator == "equals":
        return value == condition.value
    if operator == "contains":
        if isinstance(value, str):
            return str(condition.value) in value
        if isinstance(value, (list, tuple, set, frozenset, dict)):
            return condition.value in value
        return False
    if operator == "matches":
        try:
            return re.search(str(condition.value), str(value)) is not None
        except re.error:
            return False
    if operator in ("greater_than", "less_than"):
        try:
            left = float(value)
            right = float(condition.value)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    return False


def _lookup(error: ErrorRecord, path: str) -> Any:
    current: Any = {
        "id": error.id,
        "severity": error.severity,
        "category": error.category,
        "message": error.message,
        "source": error.source,
        "context": error.context,
        "component": error.component,
        "plugin": error.plugin,
        "retry_count": error.retry_count,
    }
    for part in (path or "").split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current
