"""
Domain errors raised by the bridge.

Every error carries a short machine-readable ``code``; the HTTP layer maps
each class to a status code (see ``main.py``).
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""

    code = "bridge_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BridgeError):
    """A required field is missing, empty or inconsistent. Raised before any side effect."""

    code = "validation_error"

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class IdentityNotFound(BridgeError):
    """The identity resolver has no mapping for the given user id or phone."""

    code = "identity_not_found"

    def __init__(self, kind: str, value: str):
        super().__init__(f"{kind} not found: {value}")
        self.kind = kind
        self.value = value


class MessageNotFound(BridgeError):
    code = "message_not_found"

    def __init__(self, message_id: str, kind: str = "message"):
        super().__init__(f"{kind} not found: {message_id}")
        self.message_id = message_id
        self.kind = kind


class ConcurrencyConflict(BridgeError):
    """Illegal status transition or a lost claim race."""

    code = "concurrency_conflict"


class DeliveryBestEffortFailure(BridgeError):
    """A real-time notification could not reach any session. Logged, never returned to callers."""

    code = "delivery_best_effort_failure"

    def __init__(self, user_id: str, reason: str):
        super().__init__(f"could not notify user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason
