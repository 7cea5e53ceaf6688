"""Shared fixtures: in-memory storage, a fixed clock and an isolated metrics registry."""
import pytest
from prometheus_client import CollectorRegistry

from ruleloop.config.settings import StorageConfig
from ruleloop.feedback.models import FeedbackEvent, FeedbackLabel
from ruleloop.feedback.storage import RedisStorage
from ruleloop.feedback.store import FeedbackStore
from ruleloop.utils.metrics import MetricsCollector
from ruleloop.utils.time import FixedClock, get_clock, set_clock


T0 = 1_700_000_000.0


@pytest.fixture
def clock():
    previous = get_clock()
    fixed = FixedClock(T0)
    set_clock(fixed)
    yield fixed
    set_clock(previous)


@pytest.fixture
def storage():
    return RedisStorage(StorageConfig(disable_persistence=True))


@pytest.fixture
def store(storage):
    return FeedbackStore(storage)


@pytest.fixture
def metrics():
    return MetricsCollector(CollectorRegistry())


def make_event(
    event_id,
    label=FeedbackLabel.FALSE_POSITIVE,
    rule_version_id="rv-1",
    source="volume_spike",
    timestamp=T0,
    symbol=None,
    signals=(),
):
    return FeedbackEvent(
        event_id=event_id,
        rule_version_id=rule_version_id,
        label=label,
        source=source,
        timestamp=timestamp,
        symbol=symbol,
        signals=signals,
    )


@pytest.fixture
def event_factory():
    return make_event
