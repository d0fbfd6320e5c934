"""Error taxonomy shared by the sync engine, analytics and API layers."""


class AzPulseError(Exception):
    """Base class for all application errors."""

    pass


class AuthError(AzPulseError):
    """Credential exchange was rejected or a token was revoked. Not retryable."""

    pass


class RemoteError(AzPulseError):
    """
    Failure talking to the cloud provider.

    Transient errors (timeouts, rate limits, 5xx) are retried on the next
    schedule tick. Permanent errors (404, malformed request) are not.
    """

    def __init__(self, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code

    @property
    def kind(self) -> str:
        return "transient" if self.transient else "permanent"


class WriteError(AzPulseError):
    """Storage failure while persisting synced records."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class RecordValidationError(AzPulseError):
    """A single provider record could not be parsed. The record is skipped."""

    pass


class SyncAlreadyRunningError(AzPulseError):
    """A sync job is already running for the same tenant and kind."""

    pass


class SyncEnqueueError(AzPulseError):
    """The task queue could not accept a sync request."""

    pass


class SyncCancelledError(AzPulseError):
    """A running sync observed a cancellation request."""

    pass


class NotFoundError(AzPulseError):
    """Requested entity does not exist."""

    pass


class TenantNotFoundError(NotFoundError):
    pass


class TenantDisabledError(AzPulseError):
    pass


class AuthorizationError(AzPulseError):
    """Caller lacks the capability required for an operation."""

    pass


class InvalidTransitionError(AzPulseError):
    """Requested state transition is not allowed from the current state."""

    pass
