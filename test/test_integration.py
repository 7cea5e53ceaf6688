"""FeedbackIntegration fast path."""
import pytest

from ruleloop.config.settings import KnowledgeConfig
from ruleloop.feedback.integration import FeedbackIntegration
from ruleloop.feedback.models import FeedbackLabel
from ruleloop.feedback.trigger import FeedbackTrigger
from ruleloop.knowledge.accumulator import KnowledgeAccumulator
from ruleloop.utils.errors import StorageError


T0 = 1_700_000_000.0


class CountingTrigger(FeedbackTrigger):
    def __init__(self):
        super().__init__(count_threshold=1000, timeout_ms=60_000, on_trigger=lambda: None)
        self.notifications = 0

    def record_feedback(self):
        self.notifications += 1
        super().record_feedback()


@pytest.fixture
def accumulator():
    return KnowledgeAccumulator(KnowledgeConfig(min_samples=2))


@pytest.fixture
def trigger():
    return CountingTrigger()


@pytest.fixture
def integration(store, accumulator, trigger, metrics):
    return FeedbackIntegration(store, accumulator, trigger, metrics=metrics)


def test_new_event_updates_store_knowledge_metrics_and_trigger(
    integration, store, accumulator, trigger, event_factory, clock
):
    result = integration.integrate(event_factory("e1", FeedbackLabel.FALSE_POSITIVE))

    assert result.duplicate is False
    assert result.metrics.fp_rate == 1.0
    assert result.label_summary["false_positive"] == 1
    assert store.count("rv-1") == 1
    assert accumulator.snapshot().false_positives == 1
    assert trigger.notifications == 1
    assert integration.published_metrics("rv-1") is result.metrics


def test_duplicate_changes_nothing(integration, accumulator, trigger, event_factory, metrics, clock):
    event = event_factory("e1")
    integration.integrate(event)
    before = integration.published_metrics("rv-1")

    result = integration.integrate(event)

    assert result.duplicate is True
    assert integration.published_metrics("rv-1") is before
    assert accumulator.snapshot().sequence == 1
    assert trigger.notifications == 1
    assert metrics.registry.get_sample_value(
        "ruleloop_feedback_recorded_total", {"label": "false_positive", "status": "duplicate"}
    ) == 1.0


def test_rolling_metrics_per_version(integration, event_factory, clock):
    integration.integrate(event_factory("a1", FeedbackLabel.FALSE_POSITIVE, rule_version_id="rv-1"))
    integration.integrate(event_factory("a2", FeedbackLabel.TRUE_POSITIVE, rule_version_id="rv-1"))
    integration.integrate(event_factory("b1", FeedbackLabel.TRUE_POSITIVE, rule_version_id="rv-2"))

    assert integration.published_metrics("rv-1").fp_rate == pytest.approx(0.5)
    assert integration.published_metrics("rv-2").fp_rate == 0.0
    assert integration.published_metrics("rv-3") is None


def test_storage_failure_leaves_everything_untouched(store, accumulator, trigger, event_factory, monkeypatch):
    integration = FeedbackIntegration(store, accumulator, trigger)

    def unavailable(*args, **kwargs):
        raise StorageError("redis down")

    monkeypatch.setattr(store.storage, "set_if_absent", unavailable)

    with pytest.raises(StorageError):
        integration.integrate(event_factory("e1"))

    assert accumulator.snapshot().sequence == 0
    assert trigger.notifications == 0
    assert integration.published_metrics("rv-1") is None


def test_batch_reports_counts_and_skips_empty(integration, trigger, event_factory, clock):
    assert integration.integrate_batch([]).status == "skipped"

    events = [
        event_factory("e1", FeedbackLabel.FALSE_POSITIVE),
        event_factory("e2", FeedbackLabel.TRUE_POSITIVE),
        event_factory("e1", FeedbackLabel.FALSE_POSITIVE),
        event_factory("e3", FeedbackLabel.UNKNOWN),
    ]
    result = integration.integrate_batch(events)

    assert result.status == "processed"
    assert result.processed == 4
    assert result.duplicates == 1
    assert result.label_summary == {"true_positive": 1, "false_positive": 1, "unknown": 1}
    assert trigger.notifications == 3


def test_reload_rebuilds_metrics_from_log(store, accumulator, trigger, event_factory, clock):
    store.record(event_factory("e1", FeedbackLabel.FALSE_POSITIVE))
    store.record(event_factory("e2", FeedbackLabel.TRUE_POSITIVE, timestamp=T0 + 1))
    store.record(event_factory("e3", FeedbackLabel.TRUE_POSITIVE, timestamp=T0 + 2))

    integration = FeedbackIntegration(store, accumulator, trigger)
    metrics = integration.reload("rv-1")

    assert metrics.labeled_count == 3
    assert metrics.fp_rate == pytest.approx(1 / 3)
    assert metrics.window_start == T0
    assert metrics.window_end == T0 + 2
    assert integration.published_metrics("rv-1") == metrics
    assert metrics == store.metrics("rv-1", window=(T0, T0 + 2))


def test_retry_after_failed_index_write_integrates_event(
    integration, store, accumulator, trigger, event_factory, monkeypatch, clock
):
    index_event = store.storage.index_event
    calls = []

    def flaky_index(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StorageError("connection reset")
        return index_event(*args, **kwargs)

    monkeypatch.setattr(store.storage, "index_event", flaky_index)
    event = event_factory("e1", FeedbackLabel.FALSE_POSITIVE)

    with pytest.raises(StorageError):
        integration.integrate(event)
    result = integration.integrate(event)

    assert result.duplicate is False
    assert result.metrics.sample_count == 1
    assert accumulator.snapshot().sequence == 1
    assert trigger.notifications == 1
    assert integration.integrate(event).duplicate is True
    assert integration.published_metrics("rv-1").sample_count == 1


def test_counts_load_from_log_on_first_use(store, accumulator, trigger, event_factory, clock):
    store.record(event_factory("e1", FeedbackLabel.FALSE_POSITIVE))
    store.record(event_factory("e2", FeedbackLabel.TRUE_POSITIVE, timestamp=T0 + 1))
    store.record(event_factory("old", FeedbackLabel.TRUE_POSITIVE, rule_version_id="rv-0"))

    integration = FeedbackIntegration(store, accumulator, trigger)

    assert integration.published_metrics("rv-0").sample_count == 1
    result = integration.integrate(event_factory("e3", FeedbackLabel.TRUE_POSITIVE, timestamp=T0 + 2))
    assert result.metrics.sample_count == 3
    assert result.metrics.fp_rate == pytest.approx(1 / 3)
    assert result.metrics == store.metrics("rv-1", window=(T0, T0 + 2))


def test_reload_while_event_in_flight_counts_it_once(integration, store, event_factory, monkeypatch, clock):
    integration.integrate(event_factory("e1", FeedbackLabel.FALSE_POSITIVE))
    record = store.record

    def record_then_reload(event):
        is_new = record(event)
        integration.reload("rv-1")
        return is_new

    monkeypatch.setattr(store, "record", record_then_reload)
    result = integration.integrate(event_factory("e2", FeedbackLabel.TRUE_POSITIVE, timestamp=T0 + 1))

    assert result.metrics.sample_count == 2
    assert integration.published_metrics("rv-1").fp_rate == pytest.approx(0.5)


def test_duplicate_in_flight_during_reload_is_counted_once(integration, store, event_factory, monkeypatch, clock):
    event = event_factory("e1", FeedbackLabel.FALSE_POSITIVE)
    integration.integrate(event)
    record = store.record

    def record_then_reload(event):
        is_new = record(event)
        integration.reload("rv-1")
        return is_new

    monkeypatch.setattr(store, "record", record_then_reload)
    result = integration.integrate(event)

    assert result.duplicate is True
    assert integration.published_metrics("rv-1").sample_count == 1
