"""
RuleVersionStore - persisted rule version history and active pointer.

Versions are immutable and never deleted. Each version except the root
records its parent, and that chain is the only source of "previous
version". Activation is a single SET of the active pointer.

Redis layout (under the storage prefix):
- rules:version:<id>     JSON RuleVersion (SET NX)
- rules:history          list of {"version_id": ...} entries in creation order
- rules:active           {"version_id": ...} of the active version
- rules:activations      list of activation records (audit)
"""
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..feedback.storage import RedisStorage
from ..utils.errors import ValidationError
from ..utils.id_gen import generate_version_id
from ..utils.time import now


class VersionOrigin(Enum):
    """Who created a rule version."""
    EVOLUTION = "evolution"
    MANUAL = "manual"
    REVERT = "revert"


@dataclass(frozen=True)
class RuleVersion:
    """Immutable, addressable ruleset snapshot plus lineage pointer."""
    version_id: str
    rules_payload: str
    parent_version_id: Optional[str]
    created_at: float
    created_by: VersionOrigin

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version_id": self.version_id,
            "rules_payload": self.rules_payload,
            "parent_version_id": self.parent_version_id,
            "created_at": self.created_at,
            "created_by": self.created_by.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleVersion":
        return cls(
            version_id=data["version_id"],
            rules_payload=data["rules_payload"],
            parent_version_id=data.get("parent_version_id"),
            created_at=data["created_at"],
            created_by=VersionOrigin(data["created_by"]),
        )


class RuleVersionStore:
    """
    Rule version history with an atomic active pointer.

    Usage:
        versions = RuleVersionStore(storage)
        root = versions.bootstrap(initial_rules_json)
        candidate = versions.create(new_rules_json, parent_version_id=root.version_id)
        versions.activate(candidate.version_id)
    """

    def __init__(self, storage: RedisStorage, logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)

    def _version_key(self, version_id: str) -> str:
        return self.storage.key("rules", "version", version_id)

    def _history_key(self) -> str:
        return self.storage.key("rules", "history")

    def _active_key(self) -> str:
        return self.storage.key("rules", "active")

    def _activations_key(self) -> str:
        return self.storage.key("rules", "activations")

    def save(self, version: RuleVersion) -> RuleVersion:
        """
        Persist a new version without activating it.

        Raises:
            ValidationError: Duplicate id, unknown parent, or a second root
            StorageError: On Redis failure
        """
        if version.parent_version_id is None:
            if self.storage.exists(self._history_key()):
                raise ValidationError("Only the root rule version may have no parent")
        elif self.get(version.parent_version_id) is None:
            raise ValidationError(f"Parent rule version not found: {version.parent_version_id}")

        if not self.storage.set_if_absent(self._version_key(version.version_id), version.to_dict()):
            raise ValidationError(f"Rule version already exists: {version.version_id}")

        self.storage.rpush(self._history_key(), {"version_id": version.version_id})

        self.logger.info(
            "Rule version saved",
            extra={
                "version_id": version.version_id,
                "parent_version_id": version.parent_version_id,
                "created_by": version.created_by.value,
            }
        )
        return version

    def create(
        self,
        rules_payload: str,
        parent_version_id: Optional[str],
        created_by: VersionOrigin = VersionOrigin.EVOLUTION,
    ) -> RuleVersion:
        """Build and save a new version with a fresh id."""
        version = RuleVersion(
            version_id=generate_version_id(),
            rules_payload=rules_payload,
            parent_version_id=parent_version_id,
            created_at=now(),
            created_by=created_by,
        )
        return self.save(version)

    def bootstrap(self, rules_payload: str) -> RuleVersion:
        """
        Ensure an active version exists.

        Returns the active version, creating and activating a root version
        from ``rules_payload`` when the history is empty.
        """
        active = self.active_version()
        if active is not None:
            return active

        root = self.create(rules_payload, parent_version_id=None, created_by=VersionOrigin.MANUAL)
        self.activate(root.version_id, reason="bootstrap")
        return root

    def get(self, version_id: str) -> Optional[RuleVersion]:
        data = self.storage.get(self._version_key(version_id))
        if data is None:
            return None
        return RuleVersion.from_dict(data)

    def read_payload(self, version_id: str) -> str:
        """
        Rules payload of a stored version.

        Raises:
            ValidationError: If the version does not exist
        """
        version = self.get(version_id)
        if version is None:
            raise ValidationError(f"Rule version not found: {version_id}")
        return version.rules_payload

    def activate(self, version_id: str, reason: str = "deploy") -> Optional[str]:
        """
        Point the active pointer at an existing version.

        Args:
            version_id: Version to activate
            reason: Audit reason ("deploy", "revert", "bootstrap", ...)

        Returns:
            Previously active version id (None if there was none)

        Raises:
            ValidationError: If the version does not exist
            StorageError: On Redis failure
        """
        if self.get(version_id) is None:
            raise ValidationError(f"Cannot activate unknown rule version: {version_id}")

        previous = self.active_version_id()
        self.storage.set(self._active_key(), {"version_id": version_id})
        self.storage.rpush(self._activations_key(), {
            "version_id": version_id,
            "previous_version_id": previous,
            "reason": reason,
            "activated_at": now(),
        })

        self.logger.info(
            "Rule version activated",
            extra={"version_id": version_id, "previous_version_id": previous, "reason": reason}
        )
        return previous

    def active_version_id(self) -> Optional[str]:
        pointer = self.storage.get(self._active_key())
        if pointer is None:
            return None
        return pointer["version_id"]

    def active_version(self) -> Optional[RuleVersion]:
        version_id = self.active_version_id()
        if version_id is None:
            return None
        return self.get(version_id)

    def previous_version_id(self) -> Optional[str]:
        """Parent of the active version; None at the root or with no active version."""
        active = self.active_version()
        if active is None:
            return None
        return active.parent_version_id

    def lineage(self, version_id: str) -> List[str]:
        """Version ids from ``version_id`` back to the root."""
        chain = []
        seen = set()
        current = version_id
        while current is not None and current not in seen:
            version = self.get(current)
            if version is None:
                break
            chain.append(current)
            seen.add(current)
            current = version.parent_version_id
        return chain

    def history(self) -> List[RuleVersion]:
        """All versions in creation order."""
        ids = [entry["version_id"] for entry in self.storage.lrange(self._history_key())]
        found = self.storage.get_many([self._version_key(vid) for vid in ids])
        return [
            RuleVersion.from_dict(found[self._version_key(vid)])
            for vid in ids
            if self._version_key(vid) in found
        ]

    def activations(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent activation records, oldest first."""
        return self.storage.lrange(self._activations_key(), -limit, -1)
