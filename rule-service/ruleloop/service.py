"""
ImprovementService - wires the rule loop together.

Lifecycle:
    INITIALIZED -> start() -> RUNNING -> stop() -> STOPPED

Threads:
    - caller threads        submit_feedback() (fast path)
    - FeedbackTrigger       periodic timer, only submits work
    - ConsolidationScheduler periodic timer, only submits work
    - consolidation worker  single-thread executor running cycles

A cycle (consolidation -> evolution -> deploy) runs under the
ConsolidationLock; requests arriving while one is queued or running are
dropped and the next trigger or schedule supersedes them.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from .config.settings import Settings
from .consolidation.lock import ConsolidationLock
from .consolidation.weekly import ConsolidationResult, RecommendedAction, WeeklyConsolidation
from .feedback.integration import FeedbackIntegration, IntegrationResult
from .feedback.models import FeedbackEvent
from .feedback.storage import RedisStorage
from .feedback.store import FeedbackStore
from .feedback.trigger import FeedbackTrigger
from .knowledge.accumulator import KnowledgeAccumulator
from .rules.auto_revert import AutoRevert, RevertResult
from .rules.evolution import EvolutionResult, RuleEvolution, RuleGenerator
from .rules.versions import RuleVersion, RuleVersionStore
from .utils.circuit_breaker import CircuitBreakerState
from .utils.errors import (
    ConsolidationInProgressError,
    ExternalServiceError,
    RuleLoopError,
    ServiceError,
)
from .utils.id_gen import generate_ulid
from .utils.metrics import MetricsCollector, get_metrics_collector


class Deployer(Protocol):
    """Makes a rule version live in the detection engine."""

    def activate(self, version: RuleVersion) -> None:
        ...


class Notifier(Protocol):
    def notify(self, message: str) -> None:
        ...


class NullDeployer:
    """Deployer for setups where the detection engine reads the active pointer itself."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def activate(self, version: RuleVersion) -> None:
        self.logger.info("Rule version ready for detection engine", extra={"version_id": version.version_id})


class LoggingNotifier:
    """Notification sink that writes to the log at WARNING."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def notify(self, message: str) -> None:
        self.logger.warning(message)


class ServiceState(Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class CycleResult:
    cycle_id: str
    outcome: str  # deployed, superseded, no_change, rejected, dropped, failed
    consolidation: Optional[ConsolidationResult] = None
    evolution: Optional[EvolutionResult] = None
    deployed_version_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class ConsolidationScheduler:
    """Calls ``callback`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(self, interval_seconds: float, callback: Callable[[], Any], logger: Optional[logging.Logger] = None):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self):
        self.stop()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run, args=(stop_event,), name="ConsolidationScheduler", daemon=True
        )
        with self._lock:
            self._stop_event = stop_event
            self._thread = thread
        thread.start()

    def stop(self, timeout: Optional[float] = None):
        with self._lock:
            stop_event, thread = self._stop_event, self._thread
            self._stop_event = None
            self._thread = None
        if stop_event is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self, stop_event: threading.Event):
        while not stop_event.wait(self.interval_seconds):
            try:
                self.callback()
            except Exception:
                self.logger.error("Scheduled consolidation request failed", exc_info=True)


_BREAKER_STATE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.OPEN: 1,
    CircuitBreakerState.HALF_OPEN: 2,
}


class ImprovementService:
    """
    Self-tuning rule loop.

    Args:
        settings: Validated service settings
        generator: External rule synthesis capability
        deployer: Makes versions live (default: NullDeployer)
        notifier: Receives auto-revert notifications (default: LoggingNotifier)
        storage: Pre-built storage (default: built from settings.storage)
        metrics: Prometheus collector (default: process-wide collector)
        initial_rules: Ruleset used for the root version when history is empty

    Example:
        service = ImprovementService(load_settings(), generator=my_generator)
        service.start()
        service.submit_feedback(event)
        service.stop()
    """

    SHUTDOWN_TIMEOUT = 30

    def __init__(
        self,
        settings: Settings,
        generator: RuleGenerator,
        deployer: Optional[Deployer] = None,
        notifier: Optional[Notifier] = None,
        storage: Optional[RedisStorage] = None,
        metrics: Optional[MetricsCollector] = None,
        initial_rules: str = "[]",
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics or get_metrics_collector()
        self.deployer = deployer or NullDeployer()
        self.notifier = notifier or LoggingNotifier()
        self.initial_rules = initial_rules

        self.storage = storage or RedisStorage(
            settings.storage, on_breaker_state_change=self._on_breaker_state_change
        )
        self.store = FeedbackStore(self.storage)
        self.versions = RuleVersionStore(self.storage)
        self.accumulator = KnowledgeAccumulator(settings.knowledge)
        self.lock = ConsolidationLock()

        self.trigger = FeedbackTrigger(
            count_threshold=settings.trigger.count_threshold,
            timeout_ms=settings.trigger.timeout_ms,
            on_trigger=lambda: self.request_cycle("trigger"),
            metrics=self.metrics,
        )
        self.integration = FeedbackIntegration(
            self.store, self.accumulator, self.trigger, metrics=self.metrics
        )
        self.consolidation = WeeklyConsolidation(
            self.store, self.accumulator, settings.consolidation, lock=self.lock
        )
        self.evolution = RuleEvolution(
            self.versions, generator, settings.evolution, metrics=self.metrics
        )
        self.auto_revert = AutoRevert.from_config(
            settings.auto_revert,
            get_previous_version=self.versions.previous_version_id,
            read_version=self.versions.read_payload,
            revert=self._revert,
            notify=self.notifier.notify,
            metrics=self.metrics,
        )
        self.scheduler = ConsolidationScheduler(
            settings.consolidation.interval_seconds,
            lambda: self.request_cycle("schedule"),
        )

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="consolidation")
        self._state = ServiceState.INITIALIZED
        self._state_lock = threading.RLock()
        # Serializes active pointer changes (deploy and revert)
        self._deploy_lock = threading.RLock()
        self._pending_cycle: Optional[Future] = None
        self._cycle_lock = threading.Lock()
        self._last_cycle: Optional[CycleResult] = None

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    @property
    def last_cycle(self) -> Optional[CycleResult]:
        return self._last_cycle

    def start(self) -> None:
        """
        Bootstrap the version history and start the timers.

        Raises:
            ServiceError: If the service is not in INITIALIZED state or startup fails
        """
        with self._state_lock:
            if self._state is not ServiceState.INITIALIZED:
                raise ServiceError(f"Cannot start: current state is {self._state.value}")

            try:
                active = self.versions.bootstrap(self.initial_rules)
                self.integration.reload(active.version_id)
                replayed = self.accumulator.ingest_many(self.store.replay())
            except RuleLoopError as e:
                self.logger.error("Service start failed", exc_info=True, extra={"error": str(e)})
                raise ServiceError(f"Start failed: {e}") from e

            self.trigger.start()
            if self.settings.consolidation.schedule_enabled:
                self.scheduler.start()

            self._state = ServiceState.RUNNING
            self.logger.info(
                "Rule loop started",
                extra={
                    "active_version_id": active.version_id,
                    "replayed_events": replayed,
                    "environment": self.settings.environment,
                }
            )

    def stop(self, timeout: Optional[int] = None) -> None:
        """
        Stop timers and wait for an in-flight cycle to finish. Idempotent.
        """
        with self._state_lock:
            if self._state in (ServiceState.STOPPING, ServiceState.STOPPED):
                return
            self._state = ServiceState.STOPPING

        shutdown_timeout = timeout or self.SHUTDOWN_TIMEOUT
        self.logger.info("Stopping rule loop", extra={"timeout": shutdown_timeout})

        self.trigger.stop(timeout=shutdown_timeout)
        self.scheduler.stop(timeout=shutdown_timeout)
        self._executor.shutdown(wait=True)
        self.storage.close()

        with self._state_lock:
            self._state = ServiceState.STOPPED
        self.logger.info("Rule loop stopped")

    def submit_feedback(self, event: FeedbackEvent) -> IntegrationResult:
        """
        Entry point for the detection engine.

        Raises:
            ValidationError: Malformed event
            StorageError: The event could not be stored; the caller retries
        """
        result = self.integration.integrate(event)

        if (
            not result.duplicate
            and self.settings.auto_revert.check_on_feedback
            and event.rule_version_id == self.versions.active_version_id()
        ):
            try:
                self.check_revert()
            except RuleLoopError:
                self.logger.error("Auto-revert check failed", exc_info=True)

        return result

    def check_revert(self) -> Optional[RevertResult]:
        """
        Run the auto-revert check against the active version's published metrics.

        Returns:
            RevertResult, or None if there is no active version

        Raises:
            ExternalServiceError: The deployer failed during a revert
            StorageError: Version history unavailable
        """
        with self._deploy_lock:
            active_id = self.versions.active_version_id()
            if active_id is None:
                return None

            published = self.integration.published_metrics(active_id)
            fp_rate = published.fp_rate if published else 0.0
            feedback_count = published.sample_count if published else 0

            result = self.auto_revert.check(fp_rate, feedback_count)

            if result.reverted:
                self.accumulator.record_revert(
                    from_version=active_id,
                    to_version=result.previous_version,
                    fp_rate=result.fp_rate,
                )
            return result

    def _revert(self, rules_json: str):
        # AutoRevert callback; caller holds self._deploy_lock
        target_id = self.versions.previous_version_id()
        target = self.versions.get(target_id)
        if target is None or target.rules_payload != rules_json:
            raise ServiceError(f"Revert target changed during check: {target_id}")

        self._activate(target, reason="revert")

    def _activate(self, version: RuleVersion, reason: str):
        with self._deploy_lock:
            try:
                self.deployer.activate(version)
            except ExternalServiceError:
                raise
            except Exception as e:
                raise ExternalServiceError(f"Deployment of {version.version_id} failed: {e}") from e
            self.versions.activate(version.version_id, reason=reason)

    def _deploy_candidate(self, version: RuleVersion) -> bool:
        """
        Activate an evolved version unless the active pointer moved while it was built.

        Returns:
            False if the active version is no longer the candidate's parent,
            e.g. an auto-revert ran during generation
        """
        with self._deploy_lock:
            active_id = self.versions.active_version_id()
            if active_id != version.parent_version_id:
                self.logger.warning(
                    "Candidate superseded, active version changed during evolution",
                    extra={
                        "candidate_version_id": version.version_id,
                        "parent_version_id": version.parent_version_id,
                        "active_version_id": active_id,
                    }
                )
                return False
            self._activate(version, reason="deploy")
            return True

    def request_cycle(self, reason: str = "manual") -> bool:
        """
        Queue a consolidation cycle on the worker.

        Returns:
            True if queued, False if a cycle is already queued or running
            or the service is not running
        """
        if self.state is not ServiceState.RUNNING:
            self.logger.debug("Cycle request ignored, service not running", extra={"reason": reason})
            return False

        with self._cycle_lock:
            if self._pending_cycle is not None and not self._pending_cycle.done():
                self.logger.info("Cycle already pending, request dropped", extra={"reason": reason})
                self.metrics.record_consolidation("dropped")
                return False
            try:
                future = self._executor.submit(self.run_cycle, reason)
            except RuntimeError:
                # executor already shut down
                return False
            future.add_done_callback(self._on_cycle_done)
            self._pending_cycle = future
        return True

    def _on_cycle_done(self, future: Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error("Consolidation cycle crashed", exc_info=error)

    def run_cycle(self, reason: str = "manual") -> CycleResult:
        """
        Run consolidation -> evolution -> deploy once, under the consolidation lock.

        Failures are logged and reported in the result; the active version
        stays as it was.
        """
        cycle_id = generate_ulid()
        start = time.perf_counter()
        log_extra = {"cycle_id": cycle_id, "reason": reason}

        consolidation = None
        evolution = None
        deployed = None
        error = None

        try:
            with self.lock.hold(cycle_id):
                consolidation = self.consolidation.consolidate(self.versions.active_version_id())
                evolution = self.evolution.run(consolidation)

                if evolution.new_version is not None and self._deploy_candidate(evolution.new_version):
                    deployed = evolution.new_version.version_id
                    self.accumulator.record_evolution(
                        deployed,
                        consolidation.snapshot_id,
                        [p.key for p in consolidation.knowledge_delta],
                    )

            if deployed is not None:
                outcome = "deployed"
            elif evolution is not None and evolution.new_version is not None:
                outcome = "superseded"
            elif consolidation.recommended_action is RecommendedAction.NO_CHANGE:
                outcome = "no_change"
            else:
                outcome = "rejected"
        except ConsolidationInProgressError:
            outcome = "dropped"
        except RuleLoopError as e:
            outcome = "failed"
            error = str(e)
            self.logger.error("Consolidation cycle failed", exc_info=True, extra=log_extra)

        duration = time.perf_counter() - start
        self.metrics.record_consolidation(outcome, duration)

        result = CycleResult(
            cycle_id=cycle_id,
            outcome=outcome,
            consolidation=consolidation,
            evolution=evolution,
            deployed_version_id=deployed,
            error=error,
            duration_ms=duration * 1000,
        )
        self._last_cycle = result

        self.logger.info(
            "Consolidation cycle finished",
            extra={**log_extra, "outcome": outcome, "deployed_version_id": deployed}
        )
        return result

    def _on_breaker_state_change(self, name: str, old: CircuitBreakerState, new: CircuitBreakerState):
        self.metrics.set_circuit_breaker_state(name, _BREAKER_STATE_VALUES[new])

    def health(self) -> Dict[str, Any]:
        """Snapshot of service health for liveness checks and the CLI."""
        return {
            "state": self.state.value,
            "storage_healthy": self.storage.health_check(),
            "storage_breaker": self.storage.circuit_breaker.state.value,
            "trigger_running": self.trigger.running,
            "pending_feedback": self.trigger.pending_count,
            "consolidation_in_progress": self.lock.held,
            "knowledge": self.accumulator.stats(),
            "last_cycle": self._last_cycle.outcome if self._last_cycle else None,
        }
