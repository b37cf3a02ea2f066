"""
Recording core - entities, conflict detection, series matching, recorder
process supervision and per-session persistence.
"""

from recorder.entities import (
    EpgEntry,
    RecordingStatus,
    ScheduledRecording,
    SeriesMatchMode,
    SeriesRecording,
)
from recorder.errors import (
    ConfigurationError,
    InvalidTransitionError,
    MatchError,
    PersistenceError,
    ProcessStartError,
    ProcessStopError,
    RecordingConflictError,
    SchedulerError,
    ValidationError,
)

__all__ = [
    "EpgEntry",
    "RecordingStatus",
    "ScheduledRecording",
    "SeriesMatchMode",
    "SeriesRecording",
    "ConfigurationError",
    "InvalidTransitionError",
    "MatchError",
    "PersistenceError",
    "ProcessStartError",
    "ProcessStopError",
    "RecordingConflictError",
    "SchedulerError",
    "ValidationError",
]
