class DrawError(Exception):
    """Base class for draw coordination failures."""


class DrawValidationError(DrawError):
    """Request rejected before anything was written."""


class SessionBusyError(DrawError):
    """Another controller owns the running session."""


class InvalidTransitionError(DrawError):
    pass


class LeaseNotHeldError(DrawError):
    pass


class VersionConflictError(DrawError):
    """The shared record moved on since it was read."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"expected version {expected}, found {actual}")
        self.expected = expected
        self.actual = actual


class RecordNotFoundError(DrawError):
    def __init__(self, collection: str, record_id: str):
        super().__init__(f"{collection} record {record_id} not found")
        self.collection = collection
        self.record_id = record_id


class TransientError(DrawError):
    """Retryable failure (storage unavailable, deadline exceeded)."""


class FinalizationError(DrawError):
    pass
