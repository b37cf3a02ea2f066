"""Exception types raised by the recording core."""


class SchedulerError(Exception):
    """Base class for recording scheduler errors."""


class ValidationError(SchedulerError):
    """Raised when a scheduling request is malformed."""


class InvalidTransitionError(SchedulerError):
    """Raised when a recording status transition is not allowed."""


class ConfigurationError(SchedulerError):
    """Raised when no recorder binary is configured or no stream URL resolves."""


class ProcessStartError(SchedulerError):
    """Raised when the recorder process cannot be launched."""


class RecordingConflictError(ProcessStartError):
    """Raised when the recorder concurrency policy rejects a new process."""


class ProcessStopError(SchedulerError):
    """Raised when the recorder process cannot be stopped."""


class PersistenceError(SchedulerError):
    """Raised when the recording store cannot be read or written."""


class MatchError(SchedulerError):
    """Raised when matching EPG data against a series rule fails."""

    def __init__(self, series_id: str, message: str):
        super().__init__(message)
        self.series_id = series_id
