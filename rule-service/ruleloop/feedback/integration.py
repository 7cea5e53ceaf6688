"""
Fast-path feedback integration.

Runs on every feedback arrival: store the event, fold it into knowledge,
update rolling metrics for its rule version and notify the trigger. No
network calls beyond the store write (plus a one-time history load per rule
version) and no consolidation work.
"""
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple, TYPE_CHECKING

from .models import FeedbackEvent, FeedbackLabel, PerformanceMetrics
from .store import FeedbackStore
from .trigger import FeedbackTrigger
from ..utils.errors import ValidationError
from ..utils.metrics import MetricsCollector

if TYPE_CHECKING:  # pragma: no cover - knowledge imports feedback.models
    from ..knowledge.accumulator import KnowledgeAccumulator


@dataclass(frozen=True)
class IntegrationResult:
    event_id: str
    rule_version_id: str
    duplicate: bool
    metrics: Optional[PerformanceMetrics]
    label_summary: Dict[str, int]
    duration_ms: float


@dataclass(frozen=True)
class BatchIntegrationResult:
    status: str  # "processed" or "skipped"
    processed: int = 0
    duplicates: int = 0
    label_summary: Dict[str, int] = field(default_factory=dict)
    results: Tuple[IntegrationResult, ...] = ()


class _RollingCounts:
    __slots__ = ("fp", "tp", "unknown", "first_ts", "last_ts")

    def __init__(self):
        self.fp = 0
        self.tp = 0
        self.unknown = 0
        self.first_ts: Optional[float] = None
        self.last_ts: Optional[float] = None

    @property
    def total(self) -> int:
        return self.fp + self.tp + self.unknown

    def add(self, event: FeedbackEvent):
        if event.label is FeedbackLabel.FALSE_POSITIVE:
            self.fp += 1
        elif event.label is FeedbackLabel.TRUE_POSITIVE:
            self.tp += 1
        else:
            self.unknown += 1
        if self.first_ts is None or event.timestamp < self.first_ts:
            self.first_ts = event.timestamp
        if self.last_ts is None or event.timestamp > self.last_ts:
            self.last_ts = event.timestamp

    def to_metrics(self) -> PerformanceMetrics:
        total = self.total
        return PerformanceMetrics(
            fp_rate=self.fp / total if total else 0.0,
            tp_rate=self.tp / total if total else 0.0,
            sample_count=total,
            false_positives=self.fp,
            true_positives=self.tp,
            unknown_count=self.unknown,
            window_start=self.first_ts,
            window_end=self.last_ts,
        )

    def label_summary(self) -> Dict[str, int]:
        return {
            FeedbackLabel.TRUE_POSITIVE.value: self.tp,
            FeedbackLabel.FALSE_POSITIVE.value: self.fp,
            FeedbackLabel.UNKNOWN.value: self.unknown,
        }


class FeedbackIntegration:
    """
    Applies single feedback events against knowledge and live metrics.

    Published metrics are immutable PerformanceMetrics objects swapped in
    per rule version, so readers such as AutoRevert never see a partially
    updated count. Rolling counts for a version are loaded from the feedback
    log the first time the version is touched, so they do not depend on what
    this process happened to see.

    Args:
        store: Append-only feedback log
        accumulator: Knowledge accumulator
        trigger: Consolidation trigger, notified once per new event
        metrics: Optional Prometheus collector
        logger: Optional logger
    """

    def __init__(
        self,
        store: FeedbackStore,
        accumulator: "KnowledgeAccumulator",
        trigger: FeedbackTrigger,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.accumulator = accumulator
        self.trigger = trigger
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._counts: Dict[str, _RollingCounts] = {}
        self._published: Dict[str, PerformanceMetrics] = {}
        # event_id -> integrate calls currently between load and settle
        self._in_flight: Counter = Counter()
        # Logged events a load skipped because they were in flight
        self._deferred: Dict[str, FeedbackEvent] = {}

    def integrate(self, event: FeedbackEvent) -> IntegrationResult:
        """
        Integrate one feedback event.

        Args:
            event: Labeled feedback for a past detection

        Returns:
            IntegrationResult with the updated rolling metrics of the event's version

        Raises:
            ValidationError: If event is not a FeedbackEvent
            StorageError: If the event could not be stored; nothing else is
                updated and a retry integrates it
        """
        if not isinstance(event, FeedbackEvent):
            raise ValidationError(f"Expected FeedbackEvent, got {type(event).__name__}")

        start = time.perf_counter()

        with self._lock:
            self._in_flight[event.event_id] += 1
        settled = False
        try:
            with self._lock:
                self._counts_for(event.rule_version_id)

            is_new = self.store.record(event)
            if is_new:
                self.accumulator.ingest(event)

            with self._lock:
                self._settle(event, is_new)
                settled = True
                counts = self._counts.get(event.rule_version_id)
                summary = counts.label_summary() if counts else {}
                metrics = self._published.get(event.rule_version_id)
        finally:
            if not settled:
                with self._lock:
                    self._release(event.event_id)

        if not is_new:
            if self.metrics is not None:
                self.metrics.record_feedback(event.label.value, duplicate=True)
            return IntegrationResult(
                event_id=event.event_id,
                rule_version_id=event.rule_version_id,
                duplicate=True,
                metrics=metrics,
                label_summary=summary,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        if self.metrics is not None:
            self.metrics.record_feedback(event.label.value)

        self.trigger.record_feedback()

        duration_ms = (time.perf_counter() - start) * 1000
        self.logger.debug(
            "Feedback integrated",
            extra={
                "event_id": event.event_id,
                "rule_version_id": event.rule_version_id,
                "label": event.label.value,
                "fp_rate": metrics.fp_rate,
                "sample_count": metrics.sample_count,
            }
        )

        return IntegrationResult(
            event_id=event.event_id,
            rule_version_id=event.rule_version_id,
            duplicate=False,
            metrics=metrics,
            label_summary=summary,
            duration_ms=duration_ms,
        )

    def _release(self, event_id: str):
        # caller holds self._lock
        self._in_flight[event_id] -= 1
        if self._in_flight[event_id] <= 0:
            del self._in_flight[event_id]

    def _settle(self, event: FeedbackEvent, is_new: bool):
        # caller holds self._lock
        last_call = self._in_flight[event.event_id] == 1
        self._release(event.event_id)

        stored = None
        if is_new or last_call:
            stored = self._deferred.pop(event.event_id, None)

        counted = event if is_new else stored
        if counted is None:
            return

        # A version not loaded yet picks the event up from the log on first use
        counts = self._counts.get(counted.rule_version_id)
        if counts is not None:
            counts.add(counted)
            self._published[counted.rule_version_id] = counts.to_metrics()

    def _counts_for(self, rule_version_id: str) -> _RollingCounts:
        # caller holds self._lock
        counts = self._counts.get(rule_version_id)
        if counts is None:
            counts = self._load(rule_version_id)
        return counts

    def _load(self, rule_version_id: str) -> _RollingCounts:
        # caller holds self._lock; in-flight events count themselves when they settle
        counts = _RollingCounts()
        for event in self.store.query(rule_version_id):
            if event.event_id in self._in_flight:
                self._deferred[event.event_id] = event
            else:
                counts.add(event)

        self._counts[rule_version_id] = counts
        if counts.total:
            self._published[rule_version_id] = counts.to_metrics()
        else:
            self._published.pop(rule_version_id, None)
        return counts

    def integrate_batch(self, events: Iterable[FeedbackEvent]) -> BatchIntegrationResult:
        """
        Integrate events in order.

        Returns:
            "skipped" for an empty batch, otherwise counts and a label summary
            of the new events

        Raises:
            StorageError: Propagated from the first failing event; events before
                it stay recorded and a retry is idempotent
        """
        events = list(events)
        if not events:
            return BatchIntegrationResult(status="skipped")

        results = []
        summary = {label.value: 0 for label in FeedbackLabel}
        duplicates = 0
        for event in events:
            result = self.integrate(event)
            results.append(result)
            if result.duplicate:
                duplicates += 1
            else:
                summary[event.label.value] += 1

        self.logger.info(
            "Feedback batch integrated",
            extra={"processed": len(results), "duplicates": duplicates, **summary}
        )

        return BatchIntegrationResult(
            status="processed",
            processed=len(results),
            duplicates=duplicates,
            label_summary=summary,
            results=tuple(results),
        )

    def published_metrics(self, rule_version_id: str) -> Optional[PerformanceMetrics]:
        """
        Rolling metrics for a version, or None if it has no feedback yet.

        Raises:
            StorageError: If the version was not loaded yet and the log cannot be read
        """
        published = self._published.get(rule_version_id)
        if published is None and rule_version_id not in self._counts:
            with self._lock:
                self._counts_for(rule_version_id)
                published = self._published.get(rule_version_id)
        return published

    def reload(self, rule_version_id: str) -> PerformanceMetrics:
        """
        Rebuild rolling metrics for a version from the feedback log.

        Raises:
            StorageError: If the log cannot be read
        """
        with self._lock:
            counts = self._load(rule_version_id)
        return counts.to_metrics()
