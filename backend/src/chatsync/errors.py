"""Error taxonomy shared by the sync engine and the AI features."""


class ChatSyncError(Exception):
    """Base class for every error this package raises on purpose."""


class NotAuthenticatedError(ChatSyncError):
    """No user identity is present. Never retried."""

    def __init__(self, message: str = "User must be authenticated"):
        super().__init__(message)


class InvalidArgumentError(ChatSyncError):
    """A request argument failed validation."""


class NotFoundError(ChatSyncError):
    """The entity does not exist remotely."""


class PermissionDeniedError(ChatSyncError):
    """The caller may not access the resource (typically after logout)."""


class RateLimitExceededError(ChatSyncError):
    """The per-user, per-operation budget is spent for the current window."""

    def __init__(self, operation: str, retry_after_seconds: int):
        self.operation = operation
        self.retry_after_seconds = retry_after_seconds
        minutes = max(1, -(-retry_after_seconds // 60))
        super().__init__(
            f"Rate limit exceeded for {operation}. Try again in {minutes} minutes."
        )


class DeadlineExceededError(ChatSyncError):
    """A remote or Language Service call timed out. Retryable by the user."""


class RemoteUnavailableError(ChatSyncError):
    """The remote document store could not be reached."""


class TransactionConflictError(ChatSyncError):
    """A transaction kept conflicting with concurrent writers."""


class MalformedRemoteDataError(ChatSyncError):
    """A remote document matched none of the known schemas."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed document {path}: {reason}")


class LanguageServiceError(ChatSyncError):
    """The Language Service failed or returned an unusable answer."""
