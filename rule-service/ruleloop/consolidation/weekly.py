"""
Scheduled consolidation of knowledge and feedback.

Produces a point-in-time ConsolidationResult: a knowledge snapshot, window
metrics recomputed from the feedback log, and a recommendation to evolve
the rules or leave them alone.
"""
import logging
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .lock import ConsolidationLock
from .report import build_report
from ..config.settings import ConsolidationConfig
from ..feedback.models import PerformanceMetrics, compute_metrics
from ..feedback.store import FeedbackStore
from ..knowledge.accumulator import KnowledgeAccumulator, KnowledgeSnapshot, PatternStats
from ..utils.errors import StorageError
from ..utils.id_gen import generate_snapshot_id
from ..utils.time import trailing_window


class RecommendedAction(Enum):
    EVOLVE = "evolve"
    NO_CHANGE = "no_change"


@dataclass(frozen=True)
class ConsolidationResult:
    snapshot_id: str
    knowledge_delta: Tuple[PatternStats, ...]
    metrics: PerformanceMetrics
    recommended_action: RecommendedAction
    reason: str
    rule_version_id: Optional[str] = None
    report: str = ""
    knowledge: Optional[KnowledgeSnapshot] = field(default=None, compare=False, repr=False)
    duration_ms: float = field(default=0.0, compare=False)


class WeeklyConsolidation:
    """
    Mutually exclusive consolidation job.

    Decision rule, first match wins:
        1. sample_count < min_samples             -> no_change
        2. fp_rate > fp_rate_low_priority         -> evolve
        3. confident, unaddressed knowledge       -> evolve
        4. otherwise                              -> no_change

    run() takes the consolidation lock itself. consolidate() is the
    unlocked body for callers that already hold the lock for a longer
    consolidation -> evolution -> deploy sequence.
    """

    def __init__(
        self,
        store: FeedbackStore,
        accumulator: KnowledgeAccumulator,
        config: Optional[ConsolidationConfig] = None,
        lock: Optional[ConsolidationLock] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.accumulator = accumulator
        self.config = config or ConsolidationConfig()
        self.lock = lock or ConsolidationLock()
        self.logger = logger or logging.getLogger(__name__)

    def run(self, rule_version_id: Optional[str] = None) -> ConsolidationResult:
        """
        Consolidate under the consolidation lock.

        Args:
            rule_version_id: Restrict metrics to one rule version (None = all feedback)

        Raises:
            ConsolidationInProgressError: Another consolidation holds the lock
            StorageError: The feedback log could not be read; retry on the next schedule
        """
        with self.lock.hold("weekly-consolidation"):
            return self.consolidate(rule_version_id)

    def consolidate(self, rule_version_id: Optional[str] = None) -> ConsolidationResult:
        """Consolidation body; the caller must hold ``self.lock``."""
        start = time.perf_counter()
        snapshot_id = generate_snapshot_id()

        knowledge = self.accumulator.snapshot()

        window_start, window_end = trailing_window(self.config.window_seconds)
        try:
            if rule_version_id is None:
                events = self.store.replay((window_start, window_end))
            else:
                events = self.store.query(rule_version_id, (window_start, window_end))
        except StorageError:
            self.logger.error(
                "Consolidation could not read feedback log",
                extra={"snapshot_id": snapshot_id},
                exc_info=True,
            )
            raise

        metrics = compute_metrics(events, window_start, window_end)
        delta = tuple(knowledge.unaddressed_confident())
        action, reason = self.decide(metrics, delta)

        result = ConsolidationResult(
            snapshot_id=snapshot_id,
            knowledge_delta=delta,
            metrics=metrics,
            recommended_action=action,
            reason=reason,
            rule_version_id=rule_version_id,
            report=build_report(events, metrics, list(delta)),
            knowledge=knowledge,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

        self.logger.info(
            "Consolidation complete",
            extra={
                "snapshot_id": snapshot_id,
                "rule_version_id": rule_version_id,
                "recommended_action": action.value,
                "reason": reason,
                "sample_count": metrics.sample_count,
                "fp_rate": metrics.fp_rate,
                "unaddressed_patterns": len(delta),
            }
        )
        return result

    def decide(
        self,
        metrics: PerformanceMetrics,
        delta: Tuple[PatternStats, ...],
    ) -> Tuple[RecommendedAction, str]:
        cfg = self.config
        if metrics.sample_count < cfg.min_samples:
            return RecommendedAction.NO_CHANGE, (
                f"insufficient samples ({metrics.sample_count} < {cfg.min_samples})"
            )
        if metrics.fp_rate > cfg.fp_rate_low_priority:
            return RecommendedAction.EVOLVE, (
                f"FP rate {metrics.fp_rate * 100:.1f}% above {cfg.fp_rate_low_priority * 100:.1f}%"
            )
        if delta:
            return RecommendedAction.EVOLVE, f"{len(delta)} confident unaddressed pattern(s)"
        return RecommendedAction.NO_CHANGE, "metrics within target and no unaddressed patterns"
