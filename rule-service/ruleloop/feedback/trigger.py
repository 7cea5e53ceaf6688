"""
Count/time threshold trigger for consolidation.

Fires ``on_trigger`` when ``count_threshold`` feedback events have been
recorded since the last fire, or on each ``timeout_ms`` tick if any
feedback is pending. Never fires with zero pending feedback.
"""
import logging
import threading
from typing import Callable, Optional

from ..utils.metrics import MetricsCollector


class FeedbackTrigger:
    """
    Edge-triggered feedback counter with a cancellable periodic timer.

    ``on_trigger`` runs synchronously on the thread that caused the fire
    (the caller of record_feedback() or the timer thread). It must return
    quickly; long work belongs on a worker.

    Thread Safety:
        - record_feedback(), tick(), start() and stop() may be called from any thread
        - start() cancels a running timer before starting a new one
        - stop() is idempotent; once it returns no timer tick fires
    """

    def __init__(
        self,
        count_threshold: int,
        timeout_ms: int,
        on_trigger: Callable[[], None],
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if count_threshold <= 0:
            raise ValueError("count_threshold must be positive")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        self.count_threshold = count_threshold
        self.timeout_ms = timeout_ms
        self.on_trigger = on_trigger
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        # Serializes start/stop so exactly one timer thread is installed
        self._lifecycle_lock = threading.Lock()
        self._pending = 0
        self._fire_count = 0

        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def pending_count(self) -> int:
        """Feedback events recorded since the last fire."""
        with self._lock:
            return self._pending

    @property
    def fire_count(self) -> int:
        with self._lock:
            return self._fire_count

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def record_feedback(self):
        """Count one feedback event; fire once the count reaches the threshold."""
        with self._lock:
            self._pending += 1
            if self._pending < self.count_threshold:
                return
            self._consume()

        self._fire("count")

    def tick(self, stop_event: Optional[threading.Event] = None):
        """
        Timer-path check: fire only if feedback is pending.

        Args:
            stop_event: Timer generation that scheduled this tick; a set
                event means the timer was stopped and the tick is skipped
        """
        with self._lock:
            if stop_event is not None and stop_event.is_set():
                return
            if self._pending == 0:
                return
            self._consume()

        self._fire("timer")

    def start(self):
        """Start (or restart) the periodic timer."""
        with self._lifecycle_lock:
            previous = self._detach()

            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_timer,
                args=(stop_event,),
                name="FeedbackTrigger",
                daemon=True,
            )
            with self._lock:
                self._stop_event = stop_event
                self._thread = thread
            thread.start()

        if previous is not None:
            self._join(previous, None)

        self.logger.info(
            "Feedback trigger started",
            extra={"count_threshold": self.count_threshold, "timeout_ms": self.timeout_ms}
        )

    def stop(self, timeout: Optional[float] = None):
        """
        Stop the periodic timer.

        Args:
            timeout: Max seconds to wait for the timer thread (None = wait)
        """
        with self._lifecycle_lock:
            previous = self._detach()

        if previous is None:
            return

        self._join(previous, timeout)
        self.logger.info("Feedback trigger stopped")

    def _detach(self) -> Optional[threading.Thread]:
        # caller holds self._lifecycle_lock; signals the current timer to exit
        with self._lock:
            stop_event, thread = self._stop_event, self._thread
            self._stop_event = None
            self._thread = None

        if stop_event is None:
            return None
        stop_event.set()
        return thread

    def _join(self, thread: threading.Thread, timeout: Optional[float]):
        if thread is threading.current_thread():
            return
        thread.join(timeout)
        if thread.is_alive():
            self.logger.warning(f"Feedback trigger timer did not stop within {timeout}s")

    def _run_timer(self, stop_event: threading.Event):
        interval = self.timeout_ms / 1000.0
        while not stop_event.wait(interval):
            self.tick(stop_event)

    def _consume(self):
        # caller holds self._lock
        self._pending = 0
        self._fire_count += 1

    def _fire(self, path: str):
        self.logger.debug("Feedback trigger fired", extra={"path": path})
        if self.metrics is not None:
            self.metrics.record_trigger_fire(path)
        try:
            self.on_trigger()
        except Exception:
            self.logger.error("Trigger callback failed", extra={"path": path}, exc_info=True)
