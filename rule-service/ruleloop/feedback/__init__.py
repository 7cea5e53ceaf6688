"""
Feedback path: data model, storage, the append-only log, the consolidation
trigger and the fast-path integration.
"""
from .models import FeedbackEvent, FeedbackLabel, PerformanceMetrics, compute_metrics
from .storage import RedisStorage
from .store import FeedbackStore
from .trigger import FeedbackTrigger
from .integration import FeedbackIntegration, IntegrationResult, BatchIntegrationResult

__all__ = [
    "FeedbackEvent",
    "FeedbackLabel",
    "PerformanceMetrics",
    "compute_metrics",
    "RedisStorage",
    "FeedbackStore",
    "FeedbackTrigger",
    "FeedbackIntegration",
    "IntegrationResult",
    "BatchIntegrationResult",
]
