"""
Exception hierarchy for conversation history storage.

Both local backends, the sync engine and the token manager raise
these exceptions so callers can handle failures uniformly.
"""


class SessionStorageError(Exception):
    """Root of every error raised by this package."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(SessionStorageError):
    """No session with the given id exists in the active backend."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class SessionValidationError(SessionStorageError):
    """A session id or field cannot be stored as given."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class NoActiveSessionError(SessionStorageError):
    """Raised when a message is added before any session was created or loaded."""

    def __init__(self) -> None:
        super().__init__("No active session. Call create_session() first.")


class StorageIOError(SessionStorageError):
    """A local file or database operation failed."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class BackendNotInitializedError(StorageIOError):
    """Raised when a backend is used before initialize() succeeded."""

    def __init__(self, operation: str, path: str | None = None):
        super().__init__(operation, path, RuntimeError("Not initialized"))


class StorageConnectionError(SessionStorageError):
    """The SQLite database file could not be opened."""

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint, "cause": str(cause) if cause else None}
        super().__init__(f"Could not open storage at {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class CredentialsUnavailableError(SessionStorageError):
    """Raised when credentials are written while the flat-file backend is active."""

    def __init__(self, name: str):
        super().__init__(
            f"Cannot store credential '{name}': credential storage requires the SQLite backend",
            {"name": name},
        )
        self.name = name


class SyncError(SessionStorageError):
    """A push or pull against the remote account did not complete."""

    def __init__(self, message: str, blob_name: str | None = None, cause: Exception | None = None):
        details: dict = {}
        if blob_name:
            details["blob_name"] = blob_name
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.blob_name = blob_name
        self.cause = cause


class RemoteStorageError(SyncError):
    """Raised when the remote object store answers with a non-success status."""

    def __init__(self, operation: str, status_code: int, body: str = ""):
        super().__init__(f"Remote {operation} failed with HTTP {status_code}: {body[:200]}")
        self.details.update({"operation": operation, "status_code": status_code})
        self.operation = operation
        self.status_code = status_code
        self.body = body


class AuthenticationError(SessionStorageError):
    """Raised when the authorization flow or a token exchange fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        message = f"Authentication failed for {endpoint}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details)
        self.endpoint = endpoint
        self.reason = reason


class AuthenticationRequiredError(AuthenticationError):
    """Raised when a remote operation needs a token and none is stored."""

    def __init__(self, message: str = "Not signed in. Run sign-in first."):
        super().__init__("remote", message)
        self.message = message
