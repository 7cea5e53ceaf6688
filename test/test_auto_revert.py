"""AutoRevert decision order and side effects."""
import pytest

from ruleloop.config.settings import AutoRevertConfig
from ruleloop.rules.auto_revert import AutoRevert, RevertState


class Harness:
    def __init__(self, previous="v3", payloads=None):
        self.previous = previous
        self.payloads = payloads or {"v3": '[{"id": "v3-rule"}]'}
        self.reads = []
        self.reverted = []
        self.notifications = []

    def get_previous_version(self):
        return self.previous

    def read_version(self, version_id):
        self.reads.append(version_id)
        return self.payloads[version_id]

    def revert(self, rules_json):
        self.reverted.append(rules_json)

    def notify(self, message):
        self.notifications.append(message)

    def guard(self, threshold=0.05, min_feedback_count=10, **kwargs):
        return AutoRevert(
            fp_rate_threshold=threshold,
            get_previous_version=self.get_previous_version,
            read_version=self.read_version,
            revert=self.revert,
            notify=self.notify,
            min_feedback_count=min_feedback_count,
            **kwargs,
        )


def test_insufficient_feedback_takes_no_action():
    harness = Harness()
    result = harness.guard().check(0.10, 5)

    assert result.reverted is False
    assert result.reason == "insufficient feedback count"
    assert harness.reverted == []
    assert harness.notifications == []


def test_reverts_and_notifies_above_threshold():
    harness = Harness()
    guard = harness.guard()

    result = guard.check(0.10, 20)

    assert result.reverted is True
    assert result.previous_version == "v3"
    assert result.fp_rate == 0.10
    assert harness.reads == ["v3"]
    assert harness.reverted == ['[{"id": "v3-rule"}]']
    [message] = harness.notifications
    assert "10.0%" in message
    assert "5.0%" in message
    assert message == "Auto-revert triggered: FP rate 10.0% exceeds threshold 5.0%. Reverted to v3."
    assert guard.state is RevertState.REVERTED


def test_at_threshold_is_healthy():
    harness = Harness()
    guard = harness.guard()

    result = guard.check(0.05, 20)

    assert result.reverted is False
    assert result.reason is None
    assert harness.reverted == []
    assert guard.state is RevertState.STABLE


def test_no_previous_version_takes_no_action():
    harness = Harness(previous=None)

    result = harness.guard().check(0.50, 100)

    assert result.reverted is False
    assert result.reason == "no previous version available"
    assert harness.reads == []
    assert harness.reverted == []
    assert harness.notifications == []


def test_insufficient_feedback_checked_before_rate():
    harness = Harness(previous=None)
    result = harness.guard(min_feedback_count=50).check(0.90, 49)
    assert result.reason == "insufficient feedback count"


def test_revert_failure_propagates_without_notification():
    harness = Harness()

    def broken(rules_json):
        raise RuntimeError("deploy failed")

    guard = AutoRevert(
        fp_rate_threshold=0.05,
        get_previous_version=harness.get_previous_version,
        read_version=harness.read_version,
        revert=broken,
        notify=harness.notify,
    )
    with pytest.raises(RuntimeError):
        guard.check(0.2, 100)
    assert harness.notifications == []
    assert guard.state is RevertState.STABLE


def test_notify_failure_does_not_undo_revert(caplog):
    harness = Harness()

    def broken_notify(message):
        raise ConnectionError("webhook down")

    guard = AutoRevert(
        fp_rate_threshold=0.05,
        get_previous_version=harness.get_previous_version,
        read_version=harness.read_version,
        revert=harness.revert,
        notify=broken_notify,
    )
    result = guard.check(0.2, 100)

    assert result.reverted is True
    assert len(harness.reverted) == 1
    assert "notification failed" in caplog.text


def test_works_without_notifier():
    harness = Harness()
    guard = AutoRevert(0.05, harness.get_previous_version, harness.read_version, harness.revert)
    assert guard.check(0.2, 1).reverted is True


def test_from_config_and_metrics(metrics):
    harness = Harness()
    guard = AutoRevert.from_config(
        AutoRevertConfig(fp_rate_threshold=0.1, min_feedback_count=3),
        get_previous_version=harness.get_previous_version,
        read_version=harness.read_version,
        revert=harness.revert,
        metrics=metrics,
    )
    assert guard.fp_rate_threshold == 0.1
    assert guard.min_feedback_count == 3

    guard.check(0.5, 1)
    guard.check(0.05, 10)
    assert metrics.registry.get_sample_value("ruleloop_revert_checks_total", {"outcome": "insufficient"}) == 1.0
    assert metrics.registry.get_sample_value("ruleloop_revert_checks_total", {"outcome": "healthy"}) == 1.0
    assert metrics.registry.get_sample_value("ruleloop_active_fp_rate") == 0.05


@pytest.mark.parametrize("threshold,min_count", [(-0.1, 0), (1.5, 0), (0.1, -1)])
def test_rejects_invalid_parameters(threshold, min_count):
    harness = Harness()
    with pytest.raises(ValueError):
        harness.guard(threshold=threshold, min_feedback_count=min_count)
