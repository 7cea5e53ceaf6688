"""
Feedback data model.

FeedbackEvent is the unit of ground truth: immutable, append-only, and the
only input from which PerformanceMetrics are derived.
"""
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, Optional, Tuple

from ..utils.errors import ValidationError


class FeedbackLabel(Enum):
    """Outcome label attached to a past detection."""
    TRUE_POSITIVE = "true_positive"
    FALSE_POSITIVE = "false_positive"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FeedbackEvent:
    """One labeled outcome for a detection produced by a rule version."""
    event_id: str
    rule_version_id: str
    label: FeedbackLabel
    source: str
    timestamp: float
    symbol: Optional[str] = None
    note: Optional[str] = None
    signals: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.event_id:
            raise ValidationError("event_id is required")
        if not self.rule_version_id:
            raise ValidationError("rule_version_id is required")
        if not isinstance(self.label, FeedbackLabel):
            raise ValidationError(f"label must be a FeedbackLabel, got {self.label!r}")
        if not self.source:
            raise ValidationError("source is required")
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
            raise ValidationError(f"timestamp must be a number, got {self.timestamp!r}")
        if self.timestamp < 0:
            raise ValidationError("timestamp must be non-negative")
        # Accept lists from callers, store as tuple
        if not isinstance(self.signals, tuple):
            object.__setattr__(self, "signals", tuple(self.signals))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "rule_version_id": self.rule_version_id,
            "label": self.label.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "symbol": self.symbol,
            "note": self.note,
            "signals": list(self.signals),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackEvent":
        """
        Build an event from its serialized form.

        Raises:
            ValidationError: On missing fields or an unknown label
        """
        try:
            label = FeedbackLabel(data["label"])
            return cls(
                event_id=data["event_id"],
                rule_version_id=data["rule_version_id"],
                label=label,
                source=data["source"],
                timestamp=data["timestamp"],
                symbol=data.get("symbol"),
                note=data.get("note"),
                signals=tuple(data.get("signals") or ()),
            )
        except KeyError as e:
            raise ValidationError(f"Feedback event missing field: {e}") from e
        except ValueError as e:
            raise ValidationError(f"Invalid feedback event: {e}") from e


@dataclass(frozen=True)
class PerformanceMetrics:
    """FP/TP rates over a window. Derived, never stored as source of truth."""
    fp_rate: float
    tp_rate: float
    sample_count: int
    false_positives: int
    true_positives: int
    unknown_count: int
    window_start: Optional[float]
    window_end: Optional[float]

    @property
    def labeled_count(self) -> int:
        return self.false_positives + self.true_positives

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fp_rate": self.fp_rate,
            "tp_rate": self.tp_rate,
            "sample_count": self.sample_count,
            "false_positives": self.false_positives,
            "true_positives": self.true_positives,
            "unknown_count": self.unknown_count,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


def compute_metrics(
    events: Iterable[FeedbackEvent],
    window_start: Optional[float] = None,
    window_end: Optional[float] = None,
) -> PerformanceMetrics:
    """
    Compute PerformanceMetrics over events inside [window_start, window_end].

    Rates are fractions of every event in the window, unknown labels
    included. Both are 0.0 for an empty window.

    Args:
        events: Feedback events (any order)
        window_start: Inclusive lower bound, None for unbounded
        window_end: Inclusive upper bound, None for unbounded

    Returns:
        PerformanceMetrics for the window
    """
    fp = tp = unknown = 0
    for event in events:
        if window_start is not None and event.timestamp < window_start:
            continue
        if window_end is not None and event.timestamp > window_end:
            continue
        if event.label is FeedbackLabel.FALSE_POSITIVE:
            fp += 1
        elif event.label is FeedbackLabel.TRUE_POSITIVE:
            tp += 1
        else:
            unknown += 1

    total = fp + tp + unknown
    return PerformanceMetrics(
        fp_rate=fp / total if total else 0.0,
        tp_rate=tp / total if total else 0.0,
        sample_count=total,
        false_positives=fp,
        true_positives=tp,
        unknown_count=unknown,
        window_start=window_start,
        window_end=window_end,
    )
