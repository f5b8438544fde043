# exceptions.py


class FulfillerError(Exception):
    """Base class for errors raised by the fulfillment core."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str = "fulfiller_error",
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.retryable = retryable
        self.status_code = status_code


class NotFound(FulfillerError):
    """A referenced order, line item or transfer record does not exist locally."""

    def __init__(self, message: str):
        super().__init__(message, error_code="not_found", retryable=False, status_code=404)


class InvalidNotification(FulfillerError):
    """An inbound notification is malformed or lacks required fields."""

    def __init__(self, message: str):
        super().__init__(message, error_code="invalid_notification", retryable=False, status_code=400)


class InvalidTransition(FulfillerError):
    """A warehouse workflow tried an illegal state change."""

    def __init__(self, message: str):
        super().__init__(message, error_code="invalid_transition", retryable=False, status_code=400)


class StorageFailure(FulfillerError):
    """The database rejected a write; the reconciliation pass was rolled back."""

    def __init__(self, message: str):
        super().__init__(message, error_code="storage_failure", retryable=True, status_code=500)


class EnrichmentFailure(FulfillerError):
    """A product or variant detail fetch failed. Carried inside EnrichmentResult, never raised out of the engine."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message, error_code="enrichment_failure", retryable=True, status_code=status_code)


class RemoteFetchFailure(FulfillerError):
    """Fetching the authoritative order from Shopify failed; the caller should retry the notification."""

    def __init__(self, message: str, *, status_code: int | None = 502):
        super().__init__(message, error_code="remote_fetch_failure", retryable=True, status_code=status_code)
