from dataclasses import dataclass, field


@dataclass(frozen=True)
class StorageConfig:
    """Redis connection for the feedback log and rule version history."""
    host: str = "localhost"
    port: int = 6379
    password: str = None
    db: int = 0
    tls_enabled: bool = False
    max_connections: int = 10
    key_prefix: str = "ruleloop"
    socket_timeout_seconds: int = 5

    # Circuit breaker around Redis calls
    breaker_failure_threshold: int = 5
    breaker_timeout_seconds: int = 60

    # If true, everything is kept in-process (tests, local runs)
    disable_persistence: bool = False

    def validate(self):
        """Validate storage configuration."""
        if not (0 < self.port < 65536):
            raise ValueError("port must be in (0, 65536)")
        if self.db < 0:
            raise ValueError("db must be non-negative")
        if self.max_connections <= 0:
            raise ValueError("max_connections must be positive")
        if not self.key_prefix:
            raise ValueError("key_prefix must be set")
        if self.socket_timeout_seconds <= 0:
            raise ValueError("socket_timeout_seconds must be positive")
        if self.breaker_failure_threshold <= 0:
            raise ValueError("breaker_failure_threshold must be positive")
        if self.breaker_timeout_seconds <= 0:
            raise ValueError("breaker_timeout_seconds must be positive")


@dataclass(frozen=True)
class TriggerConfig:
    """Feedback trigger thresholds."""
    count_threshold: int = 50          # fire after this many feedback events
    timeout_ms: int = 6 * 3600 * 1000  # or on this period if anything is pending

    def validate(self):
        if self.count_threshold <= 0:
            raise ValueError("count_threshold must be positive")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")


@dataclass(frozen=True)
class KnowledgeConfig:
    """Accumulation policy for version-independent knowledge."""
    decay_half_life_seconds: int = 7 * 86400  # pattern weight halves per week
    min_samples: int = 20                     # samples before a pattern can be confident
    confidence_threshold: float = 0.6         # FP share that makes a pattern "confident"
    max_patterns: int = 5000

    def validate(self):
        if self.decay_half_life_seconds <= 0:
            raise ValueError("decay_half_life_seconds must be positive")
        if self.min_samples <= 0:
            raise ValueError("min_samples must be positive")
        if not (0.0 < self.confidence_threshold <= 1.0):
            raise ValueError("confidence_threshold must be in (0.0, 1.0]")
        if self.max_patterns <= 0:
            raise ValueError("max_patterns must be positive")


@dataclass(frozen=True)
class ConsolidationConfig:
    """Consolidation window and evolve/no_change policy."""
    window_seconds: int = 7 * 86400      # metrics window (weekly)
    min_samples: int = 30                # below this -> no_change
    fp_rate_low_priority: float = 0.02   # FP rate above this -> evolve
    interval_seconds: int = 7 * 86400    # scheduled run period
    schedule_enabled: bool = True

    def validate(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.min_samples < 0:
            raise ValueError("min_samples must be non-negative")
        if not (0.0 <= self.fp_rate_low_priority < 1.0):
            raise ValueError("fp_rate_low_priority must be in [0.0, 1.0)")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")


@dataclass(frozen=True)
class EvolutionConfig:
    """Structural/safety limits for synthesized rulesets."""
    max_rules: int = 200
    max_payload_bytes: int = 256 * 1024

    def validate(self):
        if self.max_rules <= 0:
            raise ValueError("max_rules must be positive")
        if self.max_payload_bytes <= 0:
            raise ValueError("max_payload_bytes must be positive")


@dataclass(frozen=True)
class AutoRevertConfig:
    """Post-deployment FP guard."""
    fp_rate_threshold: float = 0.05
    min_feedback_count: int = 10
    check_on_feedback: bool = True  # run check after every integrated event

    def validate(self):
        if not (0.0 <= self.fp_rate_threshold <= 1.0):
            raise ValueError("fp_rate_threshold must be in [0.0, 1.0]")
        if self.min_feedback_count < 0:
            raise ValueError("min_feedback_count must be non-negative")


@dataclass(frozen=True)
class Settings:
    """Complete service configuration.

    This is the single source of truth for all service settings.
    Loaded and validated by ruleloop/config/loader.py.
    """
    environment: str = "development"  # development, staging, production
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str = None

    storage: StorageConfig = field(default_factory=StorageConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    auto_revert: AutoRevertConfig = field(default_factory=AutoRevertConfig)

    def validate(self):
        """Validate every section."""
        if self.environment not in ("development", "staging", "production"):
            raise ValueError(
                f"environment must be development, staging or production; got {self.environment}"
            )
        self.storage.validate()
        self.trigger.validate()
        self.knowledge.validate()
        self.consolidation.validate()
        self.evolution.validate()
        self.auto_revert.validate()
