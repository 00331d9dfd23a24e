"""
Error taxonomy shared by the ledger, the trip store and the trip feed.
"""
from typing import Optional


class StorageError(Exception):
    """A transaction, read or write against the backing store failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ParseError(Exception):
    """A trip document is missing required fields or carries invalid values.

    Parse errors are returned as values by the trip decoder so that one
    malformed document never blocks the rest of a batch.
    """

    def __init__(self, document_id: Optional[str], reason: str):
        super().__init__(f"trip document {document_id or '<unknown>'}: {reason}")
        self.document_id = document_id
        self.reason = reason


class SubscriptionError(Exception):
    """The live trip feed failed to attach or was interrupted.

    Recoverable: the caller may resubscribe, which starts a fresh session.
    """


class TripNotFound(LookupError):
    """No trip exists with the given id."""

    def __init__(self, trip_id: str):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id
