"""Error, recovery strategy, health check and circuit breaker records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple


SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

SEVERITIES: FrozenSet[str] = frozenset(
    [SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL]
)

CATEGORY_PLUGIN_LOAD = "plugin_load"
CATEGORY_PLUGIN_EXECUTION = "plugin_execution"
CATEGORY_CONFIGURATION = "configuration"
CATEGORY_NETWORK = "network"
CATEGORY_DATABASE = "database"
CATEGORY_MEMORY = "memory"
CATEGORY_SECURITY = "security"
CATEGORY_SYSTEM = "system"
CATEGORY_UNKNOWN = "unknown"

CATEGORIES: FrozenSet[str] = frozenset(
    [
        CATEGORY_PLUGIN_LOAD,
        CATEGORY_PLUGIN_EXECUTION,
        CATEGORY_CONFIGURATION,
        CATEGORY_NETWORK,
        CATEGORY_DATABASE,
        CATEGORY_MEMORY,
        CATEGORY_SECURITY,
        CATEGORY_SYSTEM,
        CATEGORY_UNKNOWN,
    ]
)

BACKOFF_LINEAR = "linear"
BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"

ACTION_TYPES: FrozenSet[str] = frozenset(
    ["retry", "restart", "reload", "rollback", "disable", "notify", "escalate", "custom"]
)

CONDITION_OPERATORS: FrozenSet[str] = frozenset(
    ["exists", "equals", "contains", "matches", "greater_than", "less_than"]
)

CIRCUIT_CLOSED = "closed"
CIRCUIT_OPEN = "open"
CIRCUIT_HALF_OPEN = "half_open"


@dataclass
class ErrorRecord:
    id: str
    timestamp: datetime
    severity: str
    category: str
    message: str
    source: str
    context: Dict[str, Any] = field(default_factory=dict)
    component: Optional[str] = None
    plugin: Optional[str] = None
    stack: str = ""
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution_method: Optional[str] = None
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "source": self.source,
            "context": dict(self.context),
            "component": self.component,
            "plugin": self.plugin,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_method": self.resolution_method,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class RecoveryCondition:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class RecoveryAction:
    type: str
    target: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryStrategy:
    id: str
    name: str
    applicable_categories: FrozenSet[str]
    applicable_severities: FrozenSet[str]
    actions: Tuple[RecoveryAction, ...]
    conditions: Tuple[RecoveryCondition, ...] = ()
    max_retries: int = 1
    backoff_strategy: str = BACKOFF_LINEAR
    priority: int = 100
    timeout_ms: int = 30000
    description: str = ""


@dataclass(frozen=True)
class RecoveryAttempt:
    error_id: str
    strategy_id: str
    attempt: int
    success: bool
    detail: str
    started_at: datetime
    duration_ms: float


@dataclass(frozen=True)
class HealthCheckResult:
    healthy: bool
    response_time_ms: float
    timestamp: datetime
    message: str = ""


@dataclass
class HealthCheck:
    id: str
    component: str
    interval_ms: int
    timeout_ms: int
    max_consecutive_failures: int
    enabled: bool = True
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_result: Optional[HealthCheckResult] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.last_result
        return {
            "id": self.id,
            "component": self.component,
            "interval_ms": self.interval_ms,
            "timeout_ms": self.timeout_ms,
            "enabled": self.enabled,
            "consecutive_failures": self.consecutive_failures,
            "max_consecutive_failures": self.max_consecutive_failures,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_result": (
                {
                    "healthy": result.healthy,
                    "response_time_ms": result.response_time_ms,
                    "message": result.message,
                }
                if result
                else None
            ),
        }


@dataclass
class CircuitBreaker:
    id: str
    component: str
    failure_threshold: int
    recovery_timeout_ms: int
    state: str = CIRCUIT_CLOSED
    failure_count: int = 0
    request_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None
    # Set while the single HALF_OPEN trial call is in flight.
    trial_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "component": self.component,
            "state": self.state,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_ms": self.recovery_timeout_ms,
            "request_count": self.request_count,
            "success_count": self.success_count,
            "next_attempt_time": self.next_attempt_time,
        }
