from typing import Optional
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, REGISTRY


class MetricsCollector:
    """
    Prometheus metrics collector for the rule improvement loop.

    Tracks:
    - Feedback events recorded (by label, duplicates)
    - Trigger fires (count path vs. timer path)
    - Consolidation runs, outcomes and latency
    - Rule evolution outcomes
    - Auto-revert checks and live FP rate
    - Storage circuit breaker state
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.feedback_recorded = Counter(
            'ruleloop_feedback_recorded_total',
            'Feedback events integrated',
            ['label', 'status'],
            registry=self.registry
        )

        self.trigger_fires = Counter(
            'ruleloop_trigger_fires_total',
            'Feedback trigger fires',
            ['path'],
            registry=self.registry
        )

        self.consolidation_runs = Counter(
            'ruleloop_consolidation_runs_total',
            'Consolidation cycles by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.consolidation_latency_seconds = Histogram(
            'ruleloop_consolidation_latency_seconds',
            'Consolidation -> evolution -> deploy cycle latency',
            buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
            registry=self.registry
        )

        self.evolution_results = Counter(
            'ruleloop_evolution_results_total',
            'Rule evolution outcomes',
            ['outcome'],
            registry=self.registry
        )

        self.revert_checks = Counter(
            'ruleloop_revert_checks_total',
            'Auto-revert checks by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.active_fp_rate = Gauge(
            'ruleloop_active_fp_rate',
            'Live false-positive rate of the active rule version',
            registry=self.registry
        )

        self.circuit_breaker_state = Gauge(
            'ruleloop_circuit_breaker_state',
            'Circuit breaker state (0=closed, 1=open, 2=half_open)',
            ['breaker_name'],
            registry=self.registry
        )

    def record_feedback(self, label: str, duplicate: bool = False):
        """Record an integrated feedback event."""
        status = "duplicate" if duplicate else "recorded"
        self.feedback_recorded.labels(label=label, status=status).inc()

    def record_trigger_fire(self, path: str):
        """Record a trigger fire ("count" or "timer")."""
        self.trigger_fires.labels(path=path).inc()

    def record_consolidation(self, outcome: str, latency_seconds: Optional[float] = None):
        """Record a consolidation cycle outcome."""
        self.consolidation_runs.labels(outcome=outcome).inc()
        if latency_seconds is not None:
            self.consolidation_latency_seconds.observe(latency_seconds)

    def record_evolution(self, outcome: str):
        self.evolution_results.labels(outcome=outcome).inc()

    def record_revert_check(self, outcome: str, fp_rate: float):
        self.revert_checks.labels(outcome=outcome).inc()
        self.active_fp_rate.set(fp_rate)

    def set_circuit_breaker_state(self, breaker_name: str, state_value: int):
        self.circuit_breaker_state.labels(breaker_name=breaker_name).set(state_value)


_global_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global metrics collector."""
    global _global_collector
    if _global_collector is None:
        _global_collector = MetricsCollector()
    return _global_collector


def init_metrics(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Initialize metrics collector with custom registry."""
    global _global_collector
    _global_collector = MetricsCollector(registry=registry)
    return _global_collector
