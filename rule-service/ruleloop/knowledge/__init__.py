from .accumulator import KnowledgeAccumulator, KnowledgeSnapshot, PatternStats, RevertRecord

__all__ = [
    "KnowledgeAccumulator",
    "KnowledgeSnapshot",
    "PatternStats",
    "RevertRecord",
]
