from .errors import (
    RuleLoopError,
    ValidationError,
    ConfigError,
    StorageError,
    CircuitBreakerError,
    ExternalServiceError,
    ConsolidationInProgressError,
    ServiceError,
)
from .time import Clock, SystemClock, FixedClock, now, now_ms, set_clock, get_clock, trailing_window
from .id_gen import (
    generate_uuid4,
    generate_ulid,
    validate_ulid,
    generate_version_id,
    generate_snapshot_id,
)
from .metrics import MetricsCollector, get_metrics_collector, init_metrics
from .circuit_breaker import CircuitBreaker, CircuitBreakerState
from .redaction import redact_dict

__all__ = [
    "RuleLoopError",
    "ValidationError",
    "ConfigError",
    "StorageError",
    "CircuitBreakerError",
    "ExternalServiceError",
    "ConsolidationInProgressError",
    "ServiceError",
    "Clock",
    "SystemClock",
    "FixedClock",
    "now",
    "now_ms",
    "set_clock",
    "get_clock",
    "trailing_window",
    "generate_uuid4",
    "generate_ulid",
    "validate_ulid",
    "generate_version_id",
    "generate_snapshot_id",
    "MetricsCollector",
    "get_metrics_collector",
    "init_metrics",
    "CircuitBreaker",
    "CircuitBreakerState",
    "redact_dict",
]
