"""Error taxonomy of the waiting server.

Every error is request-local: the operation that raised it has rolled back and
left no partial state behind. ``main.py`` renders them in the client's
``ApiError`` shape ``{status, code, message, details}``.
"""

from typing import Any, Dict, Optional


class WaitingError(Exception):
    status_code = 400
    code = "WAITING_ERROR"
    message = "Waiting request failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"status": self.status_code, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(WaitingError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class BoothClosed(WaitingError):
    status_code = 409
    code = "BOOTH_CLOSED"
    message = "Booth is not open"


class AlreadyWaiting(WaitingError):
    status_code = 409
    code = "ALREADY_WAITING"
    message = "Already waiting at this booth"


class TooManyConcurrentWaits(WaitingError):
    status_code = 409
    code = "TOO_MANY_CONCURRENT_WAITS"
    message = "Too many booths waited at the same time"


class BoothFull(WaitingError):
    status_code = 409
    code = "BOOTH_FULL"
    message = "Booth is at capacity"


class NoOneWaiting(WaitingError):
    status_code = 409
    code = "NO_ONE_WAITING"
    message = "No one is waiting at this booth"


class InvalidState(WaitingError):
    status_code = 409
    code = "INVALID_STATE"
    message = "Waiting is not in the required state"


class CapacityExceeded(WaitingError):
    status_code = 409
    code = "CAPACITY_EXCEEDED"
    message = "Booth occupancy would exceed capacity"


class Unauthenticated(WaitingError):
    status_code = 401
    code = "UNAUTHENTICATED"
    message = "Missing or unknown access token"


class Forbidden(WaitingError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Not allowed to manage this booth"


class StorageUnavailable(WaitingError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    message = "Queue storage is unavailable"
