from .versions import RuleVersion, RuleVersionStore, VersionOrigin
from .evolution import RuleEvolution, RuleGenerator, EvolutionResult, parse_rules
from .auto_revert import AutoRevert, RevertResult, RevertState

__all__ = [
    "RuleVersion",
    "RuleVersionStore",
    "VersionOrigin",
    "RuleEvolution",
    "RuleGenerator",
    "EvolutionResult",
    "parse_rules",
    "AutoRevert",
    "RevertResult",
    "RevertState",
]
