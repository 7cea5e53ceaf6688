import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from ..utils.errors import ConsolidationInProgressError


class ConsolidationLock:
    """
    Advisory lock guarding the consolidation -> evolution -> deploy cycle.

    Acquisition never blocks: a second caller gets
    ConsolidationInProgressError instead of waiting. ``held``,
    ``holder``, ``acquisitions`` and ``rejections`` make "one cycle in
    flight" observable.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._holder: Optional[str] = None
        self._acquisitions = 0
        self._rejections = 0

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        with self._state_lock:
            return self._holder

    @property
    def acquisitions(self) -> int:
        with self._state_lock:
            return self._acquisitions

    @property
    def rejections(self) -> int:
        with self._state_lock:
            return self._rejections

    def try_acquire(self, holder: str) -> bool:
        if not self._lock.acquire(blocking=False):
            with self._state_lock:
                self._rejections += 1
            return False
        with self._state_lock:
            self._holder = holder
            self._acquisitions += 1
        return True

    def release(self):
        with self._state_lock:
            self._holder = None
        self._lock.release()

    @contextmanager
    def hold(self, holder: str) -> Iterator[None]:
        """
        Hold the lock for the duration of the block.

        Raises:
            ConsolidationInProgressError: If another cycle holds the lock
        """
        if not self.try_acquire(holder):
            current = self.holder
            self.logger.info(
                "Consolidation already in progress, request dropped",
                extra={"requested_by": holder, "held_by": current}
            )
            raise ConsolidationInProgressError(f"Consolidation in progress (held by {current})")
        try:
            yield
        finally:
            self.release()
