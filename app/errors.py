"""
Error taxonomy for catalog validation, inventory allocation and store sync.
"""


class SyncError(Exception):
    """Base class for all domain errors raised by this service."""

    pass


class ValidationError(SyncError, ValueError):
    """Raised when catalog or allocation input is malformed."""

    pass


class InsufficientInventoryError(SyncError):
    """Raised when a requested allocation exceeds the available master quantity."""

    def __init__(self, message: str, available: int = 0, requested: int = 0, variant_id: str | None = None):
        super().__init__(message)
        self.available = available
        self.requested = requested
        self.variant_id = variant_id


class StoreAdapterError(SyncError):
    """Raised when an external store rejects or fails to process a push."""

    def __init__(self, message: str, store_id: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.store_id = store_id
        self.status_code = status_code


class SyncTimeoutError(StoreAdapterError):
    """Raised when a single store push exceeds its time bound."""

    pass


class StaleWriteError(SyncError):
    """Raised when an out-of-order sync status update is rejected."""

    pass


class NotFoundError(SyncError):
    """Raised when a product or store record does not exist."""

    pass
