"""
Self-tuning rule loop.

Feedback on past detections flows into an append-only log and a
version-independent knowledge model; consolidation periodically decides
whether to evolve the ruleset, and an FP-rate guard reverts regressions.
"""
from .__version__ import VERSION, SERVICE_NAME
from .service import (
    ImprovementService,
    CycleResult,
    ServiceState,
    Deployer,
    Notifier,
    NullDeployer,
    LoggingNotifier,
)

__version__ = VERSION

__all__ = [
    "VERSION",
    "SERVICE_NAME",
    "ImprovementService",
    "CycleResult",
    "ServiceState",
    "Deployer",
    "Notifier",
    "NullDeployer",
    "LoggingNotifier",
]
