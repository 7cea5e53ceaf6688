"""ImprovementService end to end on in-memory storage."""
import json

import pytest

from ruleloop.config.settings import (
    AutoRevertConfig,
    ConsolidationConfig,
    KnowledgeConfig,
    Settings,
    StorageConfig,
    TriggerConfig,
)
from ruleloop.feedback.models import FeedbackLabel
from ruleloop.service import ImprovementService, ServiceState
from ruleloop.utils.errors import ServiceError


T0 = 1_700_000_000.0
ROOT_RULES = json.dumps([{"id": "r1", "threshold": 3.0}])
EVOLVED_RULES = json.dumps([{"id": "r1", "threshold": 4.5}])


class Generator:
    def __init__(self, response=EVOLVED_RULES):
        self.response = response
        self.calls = 0

    def generate(self, consolidation, current_rules_json):
        self.calls += 1
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class RecordingDeployer:
    def __init__(self, fail=False):
        self.fail = fail
        self.activated = []

    def activate(self, version):
        if self.fail:
            raise ConnectionError("engine unreachable")
        self.activated.append(version.version_id)


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, message):
        self.messages.append(message)


def make_settings(count_threshold=1000):
    return Settings(
        storage=StorageConfig(disable_persistence=True),
        trigger=TriggerConfig(count_threshold=count_threshold, timeout_ms=3_600_000),
        knowledge=KnowledgeConfig(min_samples=5),
        consolidation=ConsolidationConfig(min_samples=5, schedule_enabled=False),
        auto_revert=AutoRevertConfig(fp_rate_threshold=0.05, min_feedback_count=3),
    )


@pytest.fixture
def build(storage, metrics, clock):
    services = []

    def _build(generator=None, deployer=None, count_threshold=1000, shared_storage=None):
        service = ImprovementService(
            make_settings(count_threshold),
            generator=generator or Generator(),
            deployer=deployer or RecordingDeployer(),
            notifier=RecordingNotifier(),
            storage=shared_storage or storage,
            metrics=metrics,
            initial_rules=ROOT_RULES,
        )
        services.append(service)
        return service

    yield _build
    for service in services:
        service.stop(timeout=5)


def feed(service, event_factory, prefix, fp, tp, version_id=None):
    version_id = version_id or service.versions.active_version_id()
    for i in range(fp + tp):
        label = FeedbackLabel.FALSE_POSITIVE if i < fp else FeedbackLabel.TRUE_POSITIVE
        service.submit_feedback(event_factory(
            f"{prefix}{i}", label, rule_version_id=version_id, timestamp=T0 - 100 + i,
        ))


def test_lifecycle(build):
    service = build()
    assert service.state is ServiceState.INITIALIZED

    service.start()
    assert service.state is ServiceState.RUNNING
    root = service.versions.active_version()
    assert root.rules_payload == ROOT_RULES
    with pytest.raises(ServiceError):
        service.start()

    service.stop()
    service.stop()
    assert service.state is ServiceState.STOPPED
    assert not service.trigger.running


def test_cycle_without_feedback_is_no_change(build):
    service = build()
    service.start()

    result = service.run_cycle("manual")

    assert result.outcome == "no_change"
    assert result.deployed_version_id is None
    assert service.evolution.generator.calls == 0
    assert service.last_cycle is result


def test_cycle_evolves_and_deploys(build, event_factory):
    deployer = RecordingDeployer()
    service = build(deployer=deployer)
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=2, tp=4)

    result = service.run_cycle("manual")

    assert result.outcome == "deployed"
    new_id = result.deployed_version_id
    assert service.versions.active_version_id() == new_id
    assert service.versions.get(new_id).parent_version_id == root_id
    assert deployer.activated == [new_id]
    assert service.accumulator.snapshot().last_evolution_version_id == new_id
    assert result.consolidation.metrics.labeled_count == 6


def test_high_fp_after_deploy_reverts_to_parent(build, event_factory):
    deployer = RecordingDeployer()
    service = build(deployer=deployer)
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=2, tp=4)
    new_id = service.run_cycle().deployed_version_id

    feed(service, event_factory, "post", fp=3, tp=0, version_id=new_id)

    assert service.versions.active_version_id() == root_id
    assert deployer.activated == [new_id, root_id]
    [message] = service.notifier.messages
    assert "100.0%" in message and "5.0%" in message and root_id in message
    snap = service.accumulator.snapshot()
    assert snap.revert_count == 1
    assert snap.last_revert.from_version == new_id
    assert service.versions.activations()[-1]["reason"] == "revert"


def test_root_version_is_never_reverted(build, event_factory):
    service = build()
    service.start()
    root_id = service.versions.active_version_id()

    feed(service, event_factory, "e", fp=5, tp=0)

    assert service.versions.active_version_id() == root_id
    assert service.notifier.messages == []
    result = service.check_revert()
    assert result.reason == "no previous version available"


def test_generator_failure_keeps_active_version(build, event_factory, caplog):
    service = build(generator=Generator(RuntimeError("model overloaded")))
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=3, tp=3)

    result = service.run_cycle()

    assert result.outcome == "failed"
    assert "model overloaded" in result.error
    assert service.versions.active_version_id() == root_id
    assert not service.lock.held


def test_rejected_candidate_keeps_active_version(build, event_factory):
    service = build(generator=Generator("[]"))
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=3, tp=3)

    result = service.run_cycle()

    assert result.outcome == "rejected"
    assert result.evolution.rationale.startswith("candidate rejected")
    assert service.versions.active_version_id() == root_id


def test_deployer_failure_leaves_pointer_unchanged(build, event_factory):
    service = build(deployer=RecordingDeployer(fail=True))
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=3, tp=3)

    result = service.run_cycle()

    assert result.outcome == "failed"
    assert "engine unreachable" in result.error
    assert service.versions.active_version_id() == root_id


def test_cycle_while_another_runs_is_dropped(build):
    service = build()
    service.start()

    with service.lock.hold("other-cycle"):
        result = service.run_cycle()

    assert result.outcome == "dropped"
    assert result.consolidation is None


def test_request_cycle_requires_running_service(build):
    service = build()
    assert service.request_cycle("manual") is False


def test_trigger_queues_a_cycle(build, event_factory):
    service = build(count_threshold=2)
    service.start()

    feed(service, event_factory, "e", fp=0, tp=2)
    service.stop()

    assert service.trigger.fire_count == 1
    assert service.last_cycle is not None
    assert service.last_cycle.outcome == "no_change"


def test_restart_rebuilds_state_from_log(build, storage, event_factory):
    first = build()
    first.start()
    feed(first, event_factory, "e", fp=2, tp=4)
    active_id = first.versions.active_version_id()
    published = first.integration.published_metrics(active_id)

    second = build(shared_storage=storage)
    second.start()

    assert second.versions.active_version_id() == active_id
    assert second.integration.published_metrics(active_id) == published
    assert second.accumulator.snapshot() == first.accumulator.snapshot()


def test_duplicate_feedback_is_ignored(build, event_factory):
    service = build()
    service.start()
    event = event_factory("dup", FeedbackLabel.FALSE_POSITIVE,
                          rule_version_id=service.versions.active_version_id())

    assert service.submit_feedback(event).duplicate is False
    assert service.submit_feedback(event).duplicate is True
    assert service.trigger.pending_count == 1


def test_health(build):
    service = build()
    service.start()
    health = service.health()
    assert health["state"] == "running"
    assert health["storage_healthy"] is True
    assert health["storage_breaker"] == "closed"
    assert health["consolidation_in_progress"] is False
    assert health["last_cycle"] is None


class FeedbackDuringGeneration(Generator):
    """Runs a callback while the candidate is being generated."""

    def __init__(self, response, during):
        super().__init__(response)
        self.during = during

    def generate(self, consolidation, current_rules_json):
        self.during()
        return super().generate(consolidation, current_rules_json)


def test_revert_during_generation_supersedes_candidate(build, event_factory):
    deployer = RecordingDeployer()
    service = build(deployer=deployer)
    service.start()
    root_id = service.versions.active_version_id()
    feed(service, event_factory, "e", fp=2, tp=4)
    v1 = service.run_cycle().deployed_version_id

    # 1 FP in 30 is above the evolve threshold but below the revert threshold
    feed(service, event_factory, "ok", fp=0, tp=29, version_id=v1)
    feed(service, event_factory, "bad", fp=1, tp=0, version_id=v1)
    assert service.versions.active_version_id() == v1

    service.evolution.generator = FeedbackDuringGeneration(
        json.dumps([{"id": "r1", "threshold": 6.0}]),
        during=lambda: feed(service, event_factory, "late", fp=3, tp=0, version_id=v1),
    )
    result = service.run_cycle()

    assert result.outcome == "superseded"
    assert result.deployed_version_id is None
    assert result.evolution.new_version.parent_version_id == v1
    assert service.versions.active_version_id() == root_id
    assert deployer.activated == [v1, root_id]
    assert service.accumulator.snapshot().last_evolution_version_id == v1


def test_restart_then_revert_uses_logged_metrics(build, storage, event_factory):
    first = build()
    first.start()
    root_id = first.versions.active_version_id()
    feed(first, event_factory, "e", fp=2, tp=4)
    v1 = first.run_cycle().deployed_version_id

    second = build(shared_storage=storage)
    second.start()
    root_metrics = second.integration.published_metrics(root_id)
    assert root_metrics.sample_count == 6
    assert root_metrics.fp_rate == pytest.approx(2 / 6)

    feed(second, event_factory, "post", fp=3, tp=0, version_id=v1)
    assert second.versions.active_version_id() == root_id

    feed(second, event_factory, "after", fp=0, tp=1, version_id=root_id)
    assert second.integration.published_metrics(root_id).sample_count == 7
    assert second.integration.published_metrics(root_id) == second.store.metrics(
        root_id, window=(T0 - 100, T0 - 100 + 5)
    )
