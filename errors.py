"""Error taxonomy shared by the registry, the router and the HTTP layer.

Errors are raised inside the core and turned into acks or JSON bodies at the
edges. ``code`` travels to clients so they can tell terminal failures
(``auth_error``) from transient ones (``capacity_error``, ``rate_limited``).
"""


class RoomServiceError(Exception):
    code = "error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_ack(self) -> dict:
        return {"ok": False, "error": self.message, "code": self.code}

    def to_body(self) -> dict:
        return {"error": self.message}


class AuthError(RoomServiceError):
    """Wrong password or unknown room. Both look the same to the caller."""

    code = "auth_error"
    status_code = 401
    default_message = "Invalid room/password"


class CapacityError(RoomServiceError):
    code = "capacity_error"
    status_code = 403
    default_message = "Too many connections from your IP in this room"


class RateLimitError(RoomServiceError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests, try again later."


class ValidationError(RoomServiceError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class AlreadyJoinedError(ValidationError):
    default_message = "Already joined this room"


class RoomExistsError(RoomServiceError):
    code = "room_exists"
    status_code = 409
    default_message = "Room already exists"


class InternalError(RoomServiceError):
    code = "internal_error"
    status_code = 500
    default_message = "Internal error"


TERMINAL_CODES = frozenset({AuthError.code})
