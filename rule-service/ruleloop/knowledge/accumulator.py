"""
Version-independent knowledge about detection patterns.

Every feedback event contributes to a handful of pattern keys:

    source:<source>        where the detection came from
    symbol:<symbol>        instrument / entity, when present
    signal:<name>          each signal that fired for the detection

Each pattern keeps exponentially decayed false-positive and true-positive
weights. Decay is driven by event timestamps (never the wall clock), so an
event's weight is ``0.5 ** ((latest_ts - event_ts) / half_life)`` and
replaying the same log always reproduces the same state.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config.settings import KnowledgeConfig
from ..feedback.models import FeedbackEvent, FeedbackLabel
from ..utils.errors import ValidationError
from ..utils.time import now


@dataclass(frozen=True)
class PatternStats:
    """Point-in-time view of one pattern."""
    key: str
    fp_weight: float
    tp_weight: float
    sample_count: int
    confidence: float
    confident: bool
    addressed: bool
    last_seen: float


@dataclass(frozen=True)
class RevertRecord:
    from_version: str
    to_version: str
    fp_rate: float
    reverted_at: float = field(compare=False)


@dataclass(frozen=True)
class KnowledgeSnapshot:
    """
    Immutable view of accumulated knowledge.

    Two snapshots compare equal when their knowledge is equal; ``taken_at``
    is excluded from comparison.
    """
    patterns: Tuple[PatternStats, ...]
    sequence: int
    false_positives: int
    true_positives: int
    unknown_count: int
    skipped_count: int
    evolution_count: int
    revert_count: int
    last_evolution_version_id: Optional[str]
    last_revert: Optional[RevertRecord]
    taken_at: float = field(compare=False, default=0.0)

    def pattern(self, key: str) -> Optional[PatternStats]:
        for stats in self.patterns:
            if stats.key == key:
                return stats
        return None

    def unaddressed_confident(self) -> List[PatternStats]:
        """Confident patterns no rule version has been built against yet, most confident first."""
        return sorted(
            (p for p in self.patterns if p.confident and not p.addressed),
            key=lambda p: (-p.confidence, p.key),
        )


class _PatternState:
    __slots__ = (
        "fp_weight", "tp_weight", "samples", "last_ts",
        "addressed_by", "samples_at_addressed",
    )

    def __init__(self):
        self.fp_weight = 0.0
        self.tp_weight = 0.0
        self.samples = 0
        self.last_ts: Optional[float] = None
        self.addressed_by: Optional[str] = None
        self.samples_at_addressed = 0


class KnowledgeAccumulator:
    """
    Folds feedback and evolution/revert outcomes into pattern knowledge.

    Writers (ingest, record_*) mutate under a short internal lock. The
    published snapshot is rebuilt lazily on read when state changed: the raw
    state is copied under the lock and the snapshot is built outside it, so
    consolidation works on an immutable copy and never stalls ingestion.

    Args:
        config: Decay half-life, confidence policy and pattern cap
        logger: Optional logger
    """

    def __init__(self, config: Optional[KnowledgeConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or KnowledgeConfig()
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._patterns: "OrderedDict[str, _PatternState]" = OrderedDict()
        self._sequence = 0
        self._fp = 0
        self._tp = 0
        self._unknown = 0
        self._skipped = 0
        self._evolutions = 0
        self._reverts = 0
        self._last_evolution_version_id: Optional[str] = None
        self._last_revert: Optional[RevertRecord] = None

        self._snapshot: Optional[KnowledgeSnapshot] = None
        self._changes = 0

    def ingest(self, event: Any) -> bool:
        """
        Fold one feedback event into knowledge.

        Accepts a FeedbackEvent or its dict form. Malformed input is
        counted as skipped and never raised.

        Returns:
            True if the event was ingested, False if skipped
        """
        if not isinstance(event, FeedbackEvent):
            try:
                event = FeedbackEvent.from_dict(event)
            except (ValidationError, TypeError, AttributeError) as e:
                with self._lock:
                    self._skipped += 1
                    self._invalidate()
                self.logger.debug("Skipped malformed feedback event", extra={"error": str(e)})
                return False

        keys = self.pattern_keys(event)

        with self._lock:
            self._sequence += 1
            if event.label is FeedbackLabel.UNKNOWN:
                self._unknown += 1
            else:
                is_fp = event.label is FeedbackLabel.FALSE_POSITIVE
                if is_fp:
                    self._fp += 1
                else:
                    self._tp += 1
                for key in keys:
                    self._update_pattern(key, is_fp, event.timestamp)
            self._invalidate()

        return True

    @staticmethod
    def pattern_keys(event: FeedbackEvent) -> List[str]:
        keys = [f"source:{event.source}"]
        if event.symbol:
            keys.append(f"symbol:{event.symbol}")
        for signal in sorted(set(event.signals)):
            keys.append(f"signal:{signal}")
        return keys

    def _update_pattern(self, key: str, is_fp: bool, timestamp: float):
        # caller holds self._lock
        state = self._patterns.get(key)
        if state is None:
            if len(self._patterns) >= self.config.max_patterns:
                evicted, _ = self._patterns.popitem(last=False)
                self.logger.debug("Evicted stale pattern", extra={"pattern": evicted})
            state = _PatternState()
            self._patterns[key] = state
        else:
            self._patterns.move_to_end(key)

        half_life = self.config.decay_half_life_seconds
        weight = 1.0
        if state.last_ts is not None:
            if timestamp > state.last_ts:
                factor = 0.5 ** ((timestamp - state.last_ts) / half_life)
                state.fp_weight *= factor
                state.tp_weight *= factor
                state.last_ts = timestamp
            else:
                weight = 0.5 ** ((state.last_ts - timestamp) / half_life)
        else:
            state.last_ts = timestamp

        if is_fp:
            state.fp_weight += weight
        else:
            state.tp_weight += weight
        state.samples += 1

    def ingest_many(self, events: Iterable[Any]) -> int:
        """Ingest events in order; returns how many were accepted."""
        return sum(1 for event in events if self.ingest(event))

    def record_evolution(self, version_id: str, snapshot_id: str, addressed_keys: Iterable[str]):
        """
        Mark patterns a new rule version was built against as addressed.

        An addressed pattern reopens after ``min_samples`` further labeled
        samples if it is still confident, or when that version is reverted.
        """
        addressed = []
        with self._lock:
            for key in addressed_keys:
                state = self._patterns.get(key)
                if state is None:
                    continue
                state.addressed_by = version_id
                state.samples_at_addressed = state.samples
                addressed.append(key)
            self._evolutions += 1
            self._last_evolution_version_id = version_id
            self._invalidate()

        self.logger.info(
            "Evolution recorded into knowledge",
            extra={"version_id": version_id, "snapshot_id": snapshot_id, "addressed": len(addressed)}
        )

    def record_revert(self, from_version: str, to_version: str, fp_rate: float):
        """Record an auto-revert and reopen patterns the reverted version addressed."""
        reopened = 0
        with self._lock:
            for state in self._patterns.values():
                if state.addressed_by == from_version:
                    state.addressed_by = None
                    reopened += 1
            self._reverts += 1
            self._last_revert = RevertRecord(
                from_version=from_version,
                to_version=to_version,
                fp_rate=fp_rate,
                reverted_at=now(),
            )
            self._invalidate()

        self.logger.warning(
            "Revert recorded into knowledge",
            extra={
                "from_version": from_version,
                "to_version": to_version,
                "fp_rate": fp_rate,
                "reopened_patterns": reopened,
            }
        )

    def snapshot(self) -> KnowledgeSnapshot:
        """Consistent, immutable view of current knowledge."""
        with self._lock:
            if self._snapshot is not None:
                return self._snapshot
            changes = self._changes
            raw = [
                (key, s.fp_weight, s.tp_weight, s.samples, s.addressed_by, s.samples_at_addressed, s.last_ts)
                for key, s in self._patterns.items()
            ]
            totals = {
                "sequence": self._sequence,
                "false_positives": self._fp,
                "true_positives": self._tp,
                "unknown_count": self._unknown,
                "skipped_count": self._skipped,
                "evolution_count": self._evolutions,
                "revert_count": self._reverts,
                "last_evolution_version_id": self._last_evolution_version_id,
                "last_revert": self._last_revert,
            }

        snapshot = self._build_snapshot(raw, totals)

        with self._lock:
            # Only cache if no writer got in while building
            if self._changes == changes:
                self._snapshot = snapshot
        return snapshot

    def _invalidate(self):
        # caller holds self._lock
        self._changes += 1
        self._snapshot = None

    def _build_snapshot(self, raw: List[tuple], totals: Dict[str, Any]) -> KnowledgeSnapshot:
        cfg = self.config
        patterns = []
        for key, fp_weight, tp_weight, samples, addressed_by, samples_at_addressed, last_ts in sorted(raw):
            total = fp_weight + tp_weight
            if samples >= cfg.min_samples and total > 0:
                confidence = fp_weight / total
            else:
                confidence = 0.0
            addressed = (
                addressed_by is not None
                and samples - samples_at_addressed < cfg.min_samples
            )
            patterns.append(PatternStats(
                key=key,
                fp_weight=fp_weight,
                tp_weight=tp_weight,
                sample_count=samples,
                confidence=confidence,
                confident=confidence >= cfg.confidence_threshold,
                addressed=addressed,
                last_seen=last_ts,
            ))

        return KnowledgeSnapshot(patterns=tuple(patterns), taken_at=now(), **totals)

    def stats(self) -> Dict[str, Any]:
        snap = self.snapshot()
        return {
            "sequence": snap.sequence,
            "patterns": len(snap.patterns),
            "confident_unaddressed": len(snap.unaddressed_confident()),
            "skipped": snap.skipped_count,
            "evolutions": snap.evolution_count,
            "reverts": snap.revert_count,
        }
