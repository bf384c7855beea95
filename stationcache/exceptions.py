"""
Exception hierarchy for the station cache builder.

Per-market and per-lineup API errors are caught by the harvester and turned
into ledger entries. Everything else propagates to the orchestrator.
"""


class StationCacheError(Exception):
    """Base class for all station cache errors"""


class ConfigurationError(StationCacheError):
    """A setting is missing or has an invalid value"""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Invalid setting '{key}': {message}")


class ApiError(StationCacheError):
    """A remote API call did not produce usable data"""


class TransientNetworkError(ApiError):
    """Timeout, refused connection or non-200 response"""


class MalformedResponseError(ApiError):
    """Response body was not JSON or lacked the expected shape"""


class AuthenticationError(StationCacheError):
    """Credentials could not be established; the run can be resumed later"""


class DataIntegrityError(StationCacheError):
    """A station file violates the clean-format invariant"""

    def __init__(self, path, condition: str, remediation: str = ""):
        self.path = str(path)
        self.condition = condition
        message = f"{condition} in {self.path}"
        if remediation:
            message = f"{message}. {remediation}"
        super().__init__(message)


class ResourceError(StationCacheError):
    """A checkpoint, scratch or database file could not be written"""


class ConcurrentRunError(StationCacheError):
    """Another live process owns the checkpoint"""

    def __init__(self, operation: str, pid: int, checkpoint_path):
        self.operation = operation
        self.pid = pid
        self.checkpoint_path = str(checkpoint_path)
        super().__init__(
            f"Another {operation} process appears to be running (PID: {pid}). "
            f"If this is incorrect, delete {self.checkpoint_path}"
        )


class HarvestCancelled(StationCacheError):
    """The cancellation token fired at a suspension point"""
