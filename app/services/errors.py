"""Error types raised by the sync pipeline and its collaborators."""


class SyncError(Exception):
    """Base class for sync errors."""
    pass


class ConfigurationError(SyncError):
    """SOC credentials are missing or incomplete. Fatal, never retried."""
    pass


class NetworkError(SyncError):
    """The SOC request could not be completed."""
    pass


class RemoteTimeoutError(NetworkError):
    """The SOC request exceeded its timeout."""
    pass


class RemoteStatusError(NetworkError):
    """SOC answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class BadResponseError(SyncError):
    """SOC answered with something other than a JSON array."""

    def __init__(self, message: str, sample: str):
        super().__init__(message)
        self.sample = sample


class RecordProcessingError(SyncError):
    """A single record (or sub-batch) could not be processed."""
    pass


class AlreadyRunningError(SyncError):
    """Admission rejected: a conflicting run is still active."""

    def __init__(self, message: str, active_run_id: int):
        super().__init__(message)
        self.active_run_id = active_run_id


class SyncCancelledError(SyncError):
    """The run was cancelled. Not a failure."""
    pass


class RunNotFoundError(SyncError):
    pass


class RunNotResumableError(SyncError):
    pass
