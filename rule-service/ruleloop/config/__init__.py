from .settings import (
    Settings,
    StorageConfig,
    TriggerConfig,
    KnowledgeConfig,
    ConsolidationConfig,
    EvolutionConfig,
    AutoRevertConfig,
)
from .loader import load_settings

__all__ = [
    "Settings",
    "StorageConfig",
    "TriggerConfig",
    "KnowledgeConfig",
    "ConsolidationConfig",
    "EvolutionConfig",
    "AutoRevertConfig",
    "load_settings",
]
