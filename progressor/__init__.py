"""Progressor - time-tracking and progress-aggregation engine."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "TrackerService",
    "CardLifecycle",
    "TimeEntryLedger",
    "StatsAggregator",
    "SkillProgression",
    "InMemoryRepository",
    "JsonFileRepository",
    "TrackerConfig",
]
