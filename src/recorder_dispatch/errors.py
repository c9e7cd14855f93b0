class DispatchError(Exception):
    pass


class StoreError(DispatchError):
    """The shared store could not complete an operation."""


class StoreTransactionError(StoreError):
    """
    A multi-key transaction reported an error in one or more sub-operations.

    `failures` holds (index, description) pairs for the failed sub-operations.
    Backends without real rollback may have applied the others.
    """
    def __init__(self, message: str, failures=None):
        super().__init__(message)
        self.failures = failures or []


class ResourceUnavailable(DispatchError):
    """No recorder could be claimed."""


class LockAcquisitionFailed(DispatchError):
    def __init__(self, name: str, attempts: int):
        self.name = name
        self.attempts = attempts
        super().__init__(f"Failed to acquire lock {name} after {attempts} attempts.")


class MissingMetadata(DispatchError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"No metadata for queued request {request_id}")


class RequestCanceled(DispatchError):
    """The requester is gone; the request should be withdrawn rather than retried."""
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request {request_id} was canceled by the requester")


class NotificationError(DispatchError):
    pass
