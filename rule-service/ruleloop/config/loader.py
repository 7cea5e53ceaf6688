"""
Configuration loader for the rule loop service.

Loads and validates all configuration from environment variables.
Fail fast on invalid values; production refuses in-memory persistence.
"""
import os
from typing import Optional

from dotenv import load_dotenv

from .settings import (
    Settings,
    StorageConfig,
    TriggerConfig,
    KnowledgeConfig,
    ConsolidationConfig,
    EvolutionConfig,
    AutoRevertConfig,
)
from ..utils.errors import ConfigError


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load and validate service configuration from environment.

    Args:
        env_file: Optional path to a .env file loaded before reading variables

    Returns:
        Validated Settings object

    Raises:
        ConfigError: If configuration is invalid or incomplete
    """
    if env_file:
        if not os.path.exists(env_file):
            raise ConfigError(f".env file not found: {env_file}")
        load_dotenv(env_file, override=True)

    environment = _get_env("ENVIRONMENT", "development")

    storage = StorageConfig(
        host=_get_env("REDIS_HOST", "localhost"),
        port=_get_int_env("REDIS_PORT", 6379),
        password=_get_env("REDIS_PASSWORD") or None,
        db=_get_int_env("REDIS_DB", 0),
        tls_enabled=_get_bool_env("REDIS_TLS_ENABLED", False),
        max_connections=_get_int_env("REDIS_MAX_CONNECTIONS", 10),
        key_prefix=_get_env("RULELOOP_KEY_PREFIX", "ruleloop"),
        socket_timeout_seconds=_get_int_env("REDIS_SOCKET_TIMEOUT_SECONDS", 5),
        breaker_failure_threshold=_get_int_env("STORAGE_BREAKER_FAILURE_THRESHOLD", 5),
        breaker_timeout_seconds=_get_int_env("STORAGE_BREAKER_TIMEOUT_SECONDS", 60),
        disable_persistence=_get_bool_env("RULELOOP_DISABLE_PERSISTENCE", False),
    )

    trigger = TriggerConfig(
        count_threshold=_get_int_env("TRIGGER_COUNT_THRESHOLD", 50),
        timeout_ms=_get_int_env("TRIGGER_TIMEOUT_MS", 6 * 3600 * 1000),
    )

    knowledge = KnowledgeConfig(
        decay_half_life_seconds=_get_int_env("KNOWLEDGE_DECAY_HALF_LIFE_SECONDS", 7 * 86400),
        min_samples=_get_int_env("KNOWLEDGE_MIN_SAMPLES", 20),
        confidence_threshold=_get_float_env("KNOWLEDGE_CONFIDENCE_THRESHOLD", 0.6),
        max_patterns=_get_int_env("KNOWLEDGE_MAX_PATTERNS", 5000),
    )

    consolidation = ConsolidationConfig(
        window_seconds=_get_int_env("CONSOLIDATION_WINDOW_SECONDS", 7 * 86400),
        min_samples=_get_int_env("CONSOLIDATION_MIN_SAMPLES", 30),
        fp_rate_low_priority=_get_float_env("CONSOLIDATION_FP_RATE_LOW_PRIORITY", 0.02),
        interval_seconds=_get_int_env("CONSOLIDATION_INTERVAL_SECONDS", 7 * 86400),
        schedule_enabled=_get_bool_env("CONSOLIDATION_SCHEDULE_ENABLED", True),
    )

    evolution = EvolutionConfig(
        max_rules=_get_int_env("EVOLUTION_MAX_RULES", 200),
        max_payload_bytes=_get_int_env("EVOLUTION_MAX_PAYLOAD_BYTES", 256 * 1024),
    )

    auto_revert = AutoRevertConfig(
        fp_rate_threshold=_get_float_env("AUTO_REVERT_FP_RATE_THRESHOLD", 0.05),
        min_feedback_count=_get_int_env("AUTO_REVERT_MIN_FEEDBACK_COUNT", 10),
        check_on_feedback=_get_bool_env("AUTO_REVERT_CHECK_ON_FEEDBACK", True),
    )

    settings = Settings(
        environment=environment,
        log_level=_get_env("LOG_LEVEL", "INFO"),
        log_json=_get_bool_env("LOG_JSON", environment == "production"),
        log_file=_get_env("LOG_FILE") or None,
        storage=storage,
        trigger=trigger,
        knowledge=knowledge,
        consolidation=consolidation,
        evolution=evolution,
        auto_revert=auto_revert,
    )

    try:
        settings.validate()
    except ValueError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e

    _validate_production_gates(settings)

    return settings


def _validate_production_gates(settings: Settings):
    """
    Enforce production requirements.

    Fail-closed: Any violation raises ConfigError.
    """
    if settings.environment != "production":
        return

    if settings.storage.disable_persistence:
        raise ConfigError("Production gate: persistence cannot be disabled")

    if not settings.storage.password:
        raise ConfigError("Production gate: REDIS_PASSWORD must be set")


def _get_env(key: str, default: str = "") -> str:
    """Get optional environment variable."""
    return os.getenv(key, default)


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, default: int) -> int:
    """Get integer environment variable."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Environment variable {key} must be an integer, got: {value}")


def _get_float_env(key: str, default: float) -> float:
    """Get float environment variable."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Environment variable {key} must be a float, got: {value}")
