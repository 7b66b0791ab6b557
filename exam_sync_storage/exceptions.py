"""
Custom exceptions for the sync storage layer.

Remote stores, local caches and the SyncStore raise these exceptions
so callers can tell a recoverable outage from a permanent failure.
"""


class SyncStorageError(Exception):
    """Base exception for all sync storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RemoteUnavailableError(SyncStorageError):
    """Raised when the remote store cannot be reached or rejects a call.

    SyncStore recovers from this error locally (snapshot + pending queue),
    so it is never surfaced as a fatal error by the public operations.
    """

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Remote store unavailable during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class AuthenticationError(RemoteUnavailableError):
    """Raised when the remote store rejects our credentials."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"operation": "authenticate", "endpoint": endpoint}
        if reason:
            details["reason"] = reason
        SyncStorageError.__init__(self, f"Authentication failed for {endpoint}", details)
        self.operation = "authenticate"
        self.path = None
        self.cause = None
        self.endpoint = endpoint
        self.reason = reason


class LocalCacheError(SyncStorageError):
    """Raised when the local cache cannot store or decode a value.

    Covers quota exhaustion, I/O failures and corrupt serialized values.
    There is no further fallback, so this is surfaced to the caller.
    """

    def __init__(self, operation: str, key: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        message = f"Local cache error during {operation}"
        if key:
            message += f": {key}"
        super().__init__(message, details)
        self.operation = operation
        self.key = key
        self.cause = cause


class ReplayFailureError(SyncStorageError):
    """Raised when a queued operation exhausts its replay attempts."""

    def __init__(self, op_id: str, kind: str, path: str, attempts: int, cause: str | None = None):
        details = {"op_id": op_id, "kind": kind, "path": path, "attempts": attempts}
        if cause:
            details["cause"] = cause
        super().__init__(
            f"Replay of {kind} {path} failed permanently after {attempts} attempts",
            details,
        )
        self.op_id = op_id
        self.kind = kind
        self.path = path
        self.attempts = attempts
        self.cause = cause


class InvalidPathError(SyncStorageError):
    """Raised when a path is empty or contains forbidden characters."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Invalid path {path!r}: {reason}", {"path": path, "reason": reason})
        self.path = path
        self.reason = reason


class ValidationError(SyncStorageError):
    """Raised when domain data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class ExamUnavailableError(SyncStorageError):
    """Raised when an exam is taken outside its scheduled window."""

    def __init__(self, exam_id: str, reason: str):
        super().__init__(
            f"Exam {exam_id} is not available: {reason}",
            {"exam_id": exam_id, "reason": reason},
        )
        self.exam_id = exam_id
        self.reason = reason
