"""
Rule evolution: turn a consolidation into a candidate rule version.

Synthesis is delegated to an external RuleGenerator whose output is
untrusted. A candidate is persisted only after structural validation and
is never activated here; deployment is the caller's decision.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .versions import RuleVersion, RuleVersionStore, VersionOrigin
from ..config.settings import EvolutionConfig
from ..consolidation.weekly import ConsolidationResult, RecommendedAction
from ..utils.errors import ExternalServiceError, ValidationError
from ..utils.metrics import MetricsCollector
from ..utils.time import now


class RuleGenerator(Protocol):
    """External rule synthesis capability (LLM or otherwise)."""

    def generate(self, consolidation: ConsolidationResult, current_rules_json: str) -> str:
        """Return a candidate rules payload as JSON text."""
        ...


@dataclass(frozen=True)
class EvolutionResult:
    new_version: Optional[RuleVersion]
    rationale: str
    based_on_snapshot_id: str
    rules_count: int = 0
    duration_ms: float = 0.0


def parse_rules(payload: str) -> List[Any]:
    """
    Extract the rules list from a payload.

    Accepts a JSON array or an object with a "rules" array.

    Raises:
        ValidationError: If the payload is not parseable or has no rules list
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise ValidationError(f"rules payload is not valid JSON: {e}") from e

    if isinstance(data, dict) and "rules" in data:
        data = data["rules"]
    if not isinstance(data, list):
        raise ValidationError("rules payload must be a JSON array or an object with a 'rules' array")
    return data


class RuleEvolution:
    """
    Builds the next rule version from a consolidation.

    Outcomes:
        - no_change recommended        -> new_version None
        - candidate fails validation   -> new_version None, rationale says why
        - candidate accepted           -> new version saved (parent = active), not activated

    Generator failures, including an empty response, raise
    ExternalServiceError and abandon the cycle.
    """

    def __init__(
        self,
        versions: RuleVersionStore,
        generator: RuleGenerator,
        config: Optional[EvolutionConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.versions = versions
        self.generator = generator
        self.config = config or EvolutionConfig()
        self.metrics = metrics
        self.logger = logger or logging.getLogger(__name__)

    def _log_key(self) -> str:
        return self.versions.storage.key("rules", "evolution_log")

    def run(self, consolidation: ConsolidationResult) -> EvolutionResult:
        """
        Evolve rules for a consolidation.

        Args:
            consolidation: Result of WeeklyConsolidation

        Returns:
            EvolutionResult; new_version is None unless a candidate was accepted

        Raises:
            ExternalServiceError: The generator failed or returned nothing
            StorageError: The candidate could not be persisted
        """
        start = time.perf_counter()
        snapshot_id = consolidation.snapshot_id

        if consolidation.recommended_action is not RecommendedAction.EVOLVE:
            self._record("no_change")
            return EvolutionResult(
                new_version=None,
                rationale="no change recommended",
                based_on_snapshot_id=snapshot_id,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        active = self.versions.active_version()
        current_rules_json = active.rules_payload if active is not None else "[]"

        try:
            candidate = self.generator.generate(consolidation, current_rules_json)
        except ExternalServiceError:
            self._record("failed")
            raise
        except Exception as e:
            self._record("failed")
            raise ExternalServiceError(f"Rule generator failed: {e}") from e

        if candidate is None or not str(candidate).strip():
            self._record("failed")
            raise ExternalServiceError("Rule generator returned no response")

        try:
            rules = self.validate(candidate, current_rules_json)
        except ValidationError as e:
            self._record("invalid")
            self.logger.warning(
                "Candidate ruleset rejected",
                extra={"snapshot_id": snapshot_id, "error": str(e)}
            )
            return EvolutionResult(
                new_version=None,
                rationale=f"candidate rejected: {e}",
                based_on_snapshot_id=snapshot_id,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        version = self.versions.create(
            json.dumps(rules, indent=2),
            parent_version_id=active.version_id if active is not None else None,
            created_by=VersionOrigin.EVOLUTION,
        )
        self._append_log(version, consolidation, len(rules))
        self._record("created")

        rationale = f"{consolidation.reason}; {len(rules)} rules"
        self.logger.info(
            "Rule version evolved",
            extra={
                "version_id": version.version_id,
                "parent_version_id": version.parent_version_id,
                "snapshot_id": snapshot_id,
                "rules_count": len(rules),
            }
        )

        return EvolutionResult(
            new_version=version,
            rationale=rationale,
            based_on_snapshot_id=snapshot_id,
            rules_count=len(rules),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    def validate(self, candidate: str, current_rules_json: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Structural and safety checks for a candidate payload.

        Returns:
            The parsed rules list

        Raises:
            ValidationError: On the first failed check
        """
        if not isinstance(candidate, str):
            raise ValidationError(f"payload must be text, got {type(candidate).__name__}")

        size = len(candidate.encode("utf-8"))
        if size > self.config.max_payload_bytes:
            raise ValidationError(
                f"payload is {size} bytes, limit is {self.config.max_payload_bytes}"
            )

        rules = parse_rules(candidate)
        if not rules:
            raise ValidationError("ruleset is empty")
        if len(rules) > self.config.max_rules:
            raise ValidationError(f"{len(rules)} rules exceeds limit of {self.config.max_rules}")

        seen_ids = set()
        for index, rule in enumerate(rules):
            if not isinstance(rule, dict):
                raise ValidationError(f"rule {index} is not an object")
            rule_id = rule.get("id")
            if isinstance(rule_id, bool) or not isinstance(rule_id, (str, int)) or rule_id == "":
                raise ValidationError(f"rule {index} has no valid id")
            if rule_id in seen_ids:
                raise ValidationError(f"duplicate rule id: {rule_id}")
            seen_ids.add(rule_id)

        if current_rules_json is not None and self._same_rules(rules, current_rules_json):
            raise ValidationError("candidate is identical to the active ruleset")

        return rules

    @staticmethod
    def _same_rules(rules: List[Any], current_rules_json: str) -> bool:
        try:
            current = parse_rules(current_rules_json)
        except ValidationError:
            return False
        return json.dumps(rules, sort_keys=True) == json.dumps(current, sort_keys=True)

    def _append_log(self, version: RuleVersion, consolidation: ConsolidationResult, rules_count: int):
        self.versions.storage.rpush(self._log_key(), {
            "timestamp": now(),
            "version_id": version.version_id,
            "parent_version_id": version.parent_version_id,
            "snapshot_id": consolidation.snapshot_id,
            "metrics": consolidation.metrics.to_dict(),
            "rules_count": rules_count,
        })

    def evolution_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent evolution log entries, oldest first."""
        return self.versions.storage.lrange(self._log_key(), -limit, -1)

    def _record(self, outcome: str):
        if self.metrics is not None:
            self.metrics.record_evolution(outcome)
