"""
Append-only feedback log.

Layout (all keys under the storage prefix):
- feedback:event:<event_id>           JSON-encoded FeedbackEvent (SET NX)
- feedback:timeline:all               sorted set, member=event_id, score=timestamp
- feedback:timeline:version:<id>      same, per rule version

There are no update or delete operations: every metric the loop derives
must be reproducible by replaying this log.
"""
import logging
from typing import List, Optional, Tuple

from .models import FeedbackEvent, PerformanceMetrics, compute_metrics
from .storage import RedisStorage
from ..utils.errors import ValidationError


Window = Tuple[Optional[float], Optional[float]]


class FeedbackStore:
    """
    Durable log of FeedbackEvents keyed by rule version.

    Usage:
        store = FeedbackStore(storage)
        store.record(event)
        events = store.query("rv-01H...", window=(start, end))
    """

    FETCH_BATCH_SIZE = 500

    def __init__(self, storage: RedisStorage, logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)

    def _event_key(self, event_id: str) -> str:
        return self.storage.key("feedback", "event", event_id)

    def _timeline_key(self) -> str:
        return self.storage.key("feedback", "timeline", "all")

    def _version_key(self, rule_version_id: str) -> str:
        return self.storage.key("feedback", "timeline", "version", rule_version_id)

    def record(self, event: FeedbackEvent) -> bool:
        """
        Append an event to the log. Idempotent by event_id.

        An event counts as new for whichever call first adds it to the
        per-version index, so a retry after a failed index write still
        reports the event as new.

        Args:
            event: Feedback event to store

        Returns:
            True if the event was new, False if event_id was already recorded

        Raises:
            ValidationError: If event is not a FeedbackEvent
            StorageError: If the backing store is unavailable
        """
        if not isinstance(event, FeedbackEvent):
            raise ValidationError(f"Expected FeedbackEvent, got {type(event).__name__}")

        written = self.storage.set_if_absent(self._event_key(event.event_id), event.to_dict())

        if not written:
            # The stored copy wins over the resubmitted payload
            stored = self._load(event.event_id)
            if stored is not None:
                event = stored

        if self._index(event):
            return True

        self.logger.debug(
            "Duplicate feedback event ignored",
            extra={"event_id": event.event_id}
        )
        return False

    def _index(self, event: FeedbackEvent) -> bool:
        # Both indexes are written in one transaction; the per-version count decides
        added = self.storage.index_event(
            [self._timeline_key(), self._version_key(event.rule_version_id)],
            event.event_id,
            event.timestamp,
        )
        return added[-1] > 0

    def _load(self, event_id: str) -> Optional[FeedbackEvent]:
        data = self.storage.get(self._event_key(event_id))
        if data is None:
            return None
        return FeedbackEvent.from_dict(data)

    def query(self, rule_version_id: str, window: Optional[Window] = None) -> List[FeedbackEvent]:
        """
        Events recorded against a rule version, ordered by timestamp.

        Args:
            rule_version_id: Rule version the feedback refers to
            window: Optional inclusive (start, end) timestamps; either bound may be None

        Returns:
            Events ordered by (timestamp, event_id); empty list if none

        Raises:
            StorageError: If the backing store is unavailable
        """
        return self._fetch(self._version_key(rule_version_id), window)

    def count(self, rule_version_id: str) -> int:
        """Number of events recorded against a rule version, without loading them."""
        return self.storage.zcard(self._version_key(rule_version_id))

    def replay(self, window: Optional[Window] = None) -> List[FeedbackEvent]:
        """Every event in the log (optionally windowed), ordered by timestamp."""
        return self._fetch(self._timeline_key(), window)

    def metrics(
        self,
        rule_version_id: Optional[str] = None,
        window: Optional[Window] = None,
    ) -> PerformanceMetrics:
        """Recompute PerformanceMetrics from the log for one version or all of them."""
        if rule_version_id is None:
            events = self.replay(window)
        else:
            events = self.query(rule_version_id, window)
        start, end = window if window else (None, None)
        return compute_metrics(events, start, end)

    def false_positive_rate(
        self,
        rule_version_id: Optional[str] = None,
        window: Optional[Window] = None,
    ) -> float:
        return self.metrics(rule_version_id, window).fp_rate

    def _fetch(self, index_key: str, window: Optional[Window]) -> List[FeedbackEvent]:
        start, end = window if window else (None, None)
        event_ids = self.storage.zrangebyscore(
            index_key,
            "-inf" if start is None else start,
            "+inf" if end is None else end,
        )

        events: List[FeedbackEvent] = []
        for offset in range(0, len(event_ids), self.FETCH_BATCH_SIZE):
            batch = event_ids[offset:offset + self.FETCH_BATCH_SIZE]
            found = self.storage.get_many([self._event_key(eid) for eid in batch])
            for data in found.values():
                events.append(FeedbackEvent.from_dict(data))

        events.sort(key=lambda e: (e.timestamp, e.event_id))
        return events
