class RuleLoopError(Exception):
    """Base exception for all rule loop service errors."""
    pass


class ValidationError(RuleLoopError):
    """Input or synthesized ruleset validation failed."""
    pass


class ConfigError(RuleLoopError):
    """Configuration loading or validation failed."""
    pass


class StorageError(RuleLoopError):
    """Storage/persistence layer error (Redis unavailable, write failed, etc.)."""
    pass


class CircuitBreakerError(StorageError):
    """Circuit breaker is open, operation not allowed."""
    pass


class ExternalServiceError(RuleLoopError):
    """Rule generator or deployment collaborator failed."""
    pass


class ConsolidationInProgressError(RuleLoopError):
    """A consolidation cycle already holds the consolidation lock."""
    pass


class ServiceError(RuleLoopError):
    """Service lifecycle or operation error."""
    pass
