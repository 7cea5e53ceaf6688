"""
Post-deployment FP guard.

Compares the live FP rate of the active rule version against a threshold
and switches the active pointer back to the parent version when the rate
is too high. It never creates a version.
"""
import logging
import threading
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Optional

from ..config.settings import AutoRevertConfig
from ..utils.metrics import MetricsCollector


class RevertState(Enum):
    STABLE = "stable"
    REVERTED = "reverted"


@dataclass(frozen=True)
class RevertResult:
    reverted: bool
    fp_rate: float
    reason: Optional[str] = None
    previous_version: Optional[str] = None


class AutoRevert:
    """
    Two-state guard (STABLE, REVERTED) driven by check().

    Decision order:
        1. feedback_count < min_feedback_count   -> no action, "insufficient feedback count"
        2. current_fp_rate <= fp_rate_threshold  -> no action (healthy)
        3. no previous version                   -> no action, "no previous version available"
        4. otherwise revert to the previous version and notify

    Args:
        fp_rate_threshold: Highest acceptable FP rate, in [0, 1]
        get_previous_version: Returns the id to revert to, or None at the root
        read_version: Returns the rules payload of a version id
        revert: Reactivates the given rules payload
        notify: Fire-and-forget notification sink; failures are logged
        min_feedback_count: Minimum feedback before any revert (default 0)
    """

    INSUFFICIENT_FEEDBACK = "insufficient feedback count"
    NO_PREVIOUS_VERSION = "no previous version available"

    def __init__(
        self,
        fp_rate_threshold: float,
        get_previous_version: Callable[[], Optional[str]],
        read_version: Callable[[str], str],
        revert: Callable[[str], None],
        notify: Optional[Callable[[str], None]] = None,
        min_feedback_count: int = 0,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not (0.0 <= fp_rate_threshold <= 1.0):
            raise ValueError("fp_rate_threshold must be in [0.0, 1.0]")
        if min_feedback_count < 0:
            raise ValueError("min_feedback_count must be non-negative")

        self.fp_rate_threshold = fp_rate_threshold
        self.min_feedback_count = min_feedback_count
        self.get_previous_version = get_previous_version
        self.read_version = read_version
        self.revert = revert
        self.notify = notify
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._state = RevertState.STABLE

    @classmethod
    def from_config(cls, config: AutoRevertConfig, **kwargs) -> "AutoRevert":
        return cls(
            fp_rate_threshold=config.fp_rate_threshold,
            min_feedback_count=config.min_feedback_count,
            **kwargs,
        )

    @property
    def state(self) -> RevertState:
        return self._state

    def check(self, current_fp_rate: float, feedback_count: int) -> RevertResult:
        """
        Evaluate live metrics and revert if warranted.

        Args:
            current_fp_rate: Live FP rate of the active version
            feedback_count: Feedback samples behind that rate

        Returns:
            RevertResult; preconditions not met are reported as reverted=False
            with a reason, never raised

        Raises:
            Exception: Whatever read_version or revert raise; the active
                version is left as it was
        """
        with self._lock:
            if feedback_count < self.min_feedback_count:
                return self._result("insufficient", RevertResult(
                    reverted=False, fp_rate=current_fp_rate, reason=self.INSUFFICIENT_FEEDBACK,
                ))

            if current_fp_rate <= self.fp_rate_threshold:
                self._state = RevertState.STABLE
                return self._result("healthy", RevertResult(reverted=False, fp_rate=current_fp_rate))

            previous_version = self.get_previous_version()
            if previous_version is None:
                self.logger.warning(
                    "FP rate above threshold but no previous version to revert to",
                    extra={"fp_rate": current_fp_rate, "threshold": self.fp_rate_threshold}
                )
                return self._result("no_previous", RevertResult(
                    reverted=False, fp_rate=current_fp_rate, reason=self.NO_PREVIOUS_VERSION,
                ))

            rules_json = self.read_version(previous_version)
            self.revert(rules_json)
            self._state = RevertState.REVERTED

        message = (
            f"Auto-revert triggered: FP rate {current_fp_rate * 100:.1f}% "
            f"exceeds threshold {self.fp_rate_threshold * 100:.1f}%. "
            f"Reverted to {previous_version}."
        )
        self.logger.warning(
            "Auto-revert triggered",
            extra={
                "fp_rate": current_fp_rate,
                "threshold": self.fp_rate_threshold,
                "feedback_count": feedback_count,
                "previous_version": previous_version,
            }
        )
        self._notify(message)

        return self._result("reverted", RevertResult(
            reverted=True, fp_rate=current_fp_rate, previous_version=previous_version,
        ))

    def _notify(self, message: str):
        if self.notify is None:
            return
        try:
            self.notify(message)
        except Exception:
            self.logger.error("Auto-revert notification failed", exc_info=True)

    def _result(self, outcome: str, result: RevertResult) -> RevertResult:
        if self.metrics is not None:
            self.metrics.record_revert_check(outcome, result.fp_rate)
        return result
