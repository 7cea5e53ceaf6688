"""Markdown performance report attached to each consolidation."""
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from ..feedback.models import FeedbackEvent, FeedbackLabel, PerformanceMetrics
from ..knowledge.accumulator import PatternStats


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def _group(events: Iterable[FeedbackEvent], attr: str) -> Dict[str, Dict[str, int]]:
    groups: Dict[str, Dict[str, int]] = {}
    for event in events:
        name = getattr(event, attr) or "-"
        row = groups.setdefault(name, {"count": 0, "tp": 0, "fp": 0})
        row["count"] += 1
        if event.label is FeedbackLabel.TRUE_POSITIVE:
            row["tp"] += 1
        elif event.label is FeedbackLabel.FALSE_POSITIVE:
            row["fp"] += 1
    return OrderedDict(sorted(groups.items()))


def _table(title: str, column: str, groups: Dict[str, Dict[str, int]]) -> List[str]:
    lines = [
        f"## By {title}",
        "",
        f"| {column} | Events | TP | FP | FP Rate |",
        "|---|---|---|---|---|",
    ]
    for name, row in groups.items():
        rate = row["fp"] / row["count"]
        lines.append(f"| {name} | {row['count']} | {row['tp']} | {row['fp']} | {_pct(rate)} |")
    lines.append("")
    return lines


def build_report(
    events: List[FeedbackEvent],
    metrics: PerformanceMetrics,
    patterns: Optional[List[PatternStats]] = None,
) -> str:
    """
    Render window metrics as markdown.

    Args:
        events: Feedback events inside the consolidation window
        metrics: Metrics computed over the same window
        patterns: Confident unaddressed patterns to list, if any

    Returns:
        Markdown text with totals, per-source and per-symbol tables
    """
    lines = [
        "# Rule Performance",
        "",
        f"- **Events:** {metrics.sample_count}",
        f"- **Labeled:** {metrics.labeled_count}",
        f"- **False Positives:** {metrics.false_positives}",
        f"- **FP Rate:** {_pct(metrics.fp_rate)}",
        "",
    ]

    by_source = _group(events, "source")
    if by_source:
        lines.extend(_table("Source", "Source", by_source))

    by_symbol = _group((e for e in events if e.symbol), "symbol")
    if by_symbol:
        lines.extend(_table("Symbol", "Symbol", by_symbol))

    if patterns:
        lines.append("## Unaddressed FP Patterns")
        lines.append("")
        for p in patterns:
            lines.append(f"- {p.key} (confidence: {p.confidence:.2f}, samples: {p.sample_count})")
        lines.append("")

    return "\n".join(lines)
