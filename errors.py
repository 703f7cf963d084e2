"""
Error taxonomy shared by the store, the booking engine and the API.

Each error carries the HTTP status the API answers with; the message is the
only detail that ever reaches a client.
"""


class ParkingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ParkingError):
    """Missing or malformed input."""

    status_code = 400


class NotFound(ParkingError):
    status_code = 404


class Conflict(ParkingError):
    """State precondition violated, e.g. booking an occupied slot."""

    status_code = 400


class DuplicateKey(ParkingError):
    status_code = 400


class StoreUnavailable(ParkingError):
    """Connectivity to the document store was lost."""

    status_code = 500
