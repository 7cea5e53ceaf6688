from .lock import ConsolidationLock
from .report import build_report
from .weekly import WeeklyConsolidation, ConsolidationResult, RecommendedAction

__all__ = [
    "ConsolidationLock",
    "build_report",
    "WeeklyConsolidation",
    "ConsolidationResult",
    "RecommendedAction",
]
