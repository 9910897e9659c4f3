"""Error kinds raised by the commerce services.

Every service failure is one of the kinds below.  The webhook orchestrator
and the JSON API error handler are the only places that turn them into
HTTP responses.
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    STATE_TRANSITION = "state_transition"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    DUPLICATE_EVENT = "duplicate_event"
    PERSISTENCE = "persistence"


class CommerceError(Exception):
    """Base class for all commerce errors."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"status": "error", "kind": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CommerceError):
    """Malformed input.  Never retried."""

    kind = ErrorKind.VALIDATION
    status_code = 422


class StateTransitionError(CommerceError):
    """A lifecycle transition was attempted from a disallowed state."""

    kind = ErrorKind.STATE_TRANSITION
    status_code = 422

    def __init__(self, entity: str, current: str, required):
        if isinstance(required, str):
            required = (required,)
        required = tuple(required)
        super().__init__(
            f"{entity} is '{current}', expected one of: {', '.join(required)}",
            {"current": current, "required": list(required)},
        )
        self.current = current
        self.required = required


class AuthenticationError(CommerceError):
    """Webhook signature missing, mismatched or unverifiable."""

    kind = ErrorKind.AUTHENTICATION
    status_code = 400


class NotFoundError(CommerceError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class DuplicateEventError(CommerceError):
    """The payment event was already recorded.  Acknowledged as success."""

    kind = ErrorKind.DUPLICATE_EVENT
    status_code = 200

    def __init__(self, provider: str, external_id: str):
        super().__init__(f"Event {provider}:{external_id} already processed")
        self.provider = provider
        self.external_id = external_id


class PersistenceError(CommerceError):
    """The unit of work could not be committed.  Safe to retry."""

    kind = ErrorKind.PERSISTENCE
    status_code = 500
