"""RuleVersionStore history, lineage and the active pointer."""
import pytest

from ruleloop.rules.versions import RuleVersion, RuleVersionStore, VersionOrigin
from ruleloop.utils.errors import ValidationError


@pytest.fixture
def versions(storage):
    return RuleVersionStore(storage)


def test_bootstrap_creates_and_activates_root_once(versions, clock):
    root = versions.bootstrap('[{"id": "r1"}]')

    assert root.parent_version_id is None
    assert root.created_by is VersionOrigin.MANUAL
    assert root.version_id.startswith("rv-")
    assert versions.active_version_id() == root.version_id

    again = versions.bootstrap('[{"id": "other"}]')
    assert again == root
    assert len(versions.history()) == 1


def test_only_one_root(versions, clock):
    versions.bootstrap("[]")
    with pytest.raises(ValidationError, match="root"):
        versions.create("[]", parent_version_id=None)


def test_parent_must_exist(versions, clock):
    versions.bootstrap("[]")
    with pytest.raises(ValidationError, match="Parent"):
        versions.create("[]", parent_version_id="rv-missing")


def test_duplicate_version_id_rejected(versions, clock):
    root = versions.bootstrap("[]")
    with pytest.raises(ValidationError, match="already exists"):
        versions.save(RuleVersion(
            version_id=root.version_id,
            rules_payload="[]",
            parent_version_id=root.version_id,
            created_at=clock.now(),
            created_by=VersionOrigin.EVOLUTION,
        ))


def test_create_does_not_activate(versions, clock):
    root = versions.bootstrap("[]")
    child = versions.create('[{"id": 1}]', parent_version_id=root.version_id)

    assert versions.active_version_id() == root.version_id
    assert versions.get(child.version_id) == child


def test_activate_returns_previous_and_audits(versions, clock):
    root = versions.bootstrap("[]")
    child = versions.create('[{"id": 1}]', parent_version_id=root.version_id)

    previous = versions.activate(child.version_id)

    assert previous == root.version_id
    assert versions.active_version() == child
    assert versions.previous_version_id() == root.version_id
    records = versions.activations()
    assert [r["reason"] for r in records] == ["bootstrap", "deploy"]
    assert records[-1]["previous_version_id"] == root.version_id


def test_activate_unknown_version_fails(versions, clock):
    versions.bootstrap("[]")
    with pytest.raises(ValidationError):
        versions.activate("rv-nope")


def test_previous_version_is_parent_not_last_active(versions, clock):
    v1 = versions.bootstrap("[]")
    v2 = versions.create('[{"id": 2}]', parent_version_id=v1.version_id)
    v3 = versions.create('[{"id": 3}]', parent_version_id=v2.version_id)
    versions.activate(v3.version_id)

    assert versions.previous_version_id() == v2.version_id
    assert versions.lineage(v3.version_id) == [v3.version_id, v2.version_id, v1.version_id]

    versions.activate(v1.version_id, reason="manual")
    assert versions.previous_version_id() is None


def test_history_in_creation_order(versions, clock):
    v1 = versions.bootstrap("[]")
    clock.advance(10)
    v2 = versions.create('[{"id": 2}]', parent_version_id=v1.version_id)

    history = versions.history()
    assert [v.version_id for v in history] == [v1.version_id, v2.version_id]
    assert history[1].created_at == v1.created_at + 10


def test_read_payload(versions, clock):
    root = versions.bootstrap('[{"id": "r1"}]')
    assert versions.read_payload(root.version_id) == '[{"id": "r1"}]'
    with pytest.raises(ValidationError):
        versions.read_payload("rv-missing")


def test_no_active_version(versions):
    assert versions.active_version_id() is None
    assert versions.active_version() is None
    assert versions.previous_version_id() is None
