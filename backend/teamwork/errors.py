"""Domain-level exceptions with stable machine-readable codes.

Every error raised by the presence, chat and sorter services derives from
TeamworkError so the HTTP layer and the transport dispatcher can render it
uniformly:

    - REST: exception handler in main.py -> {"error": message, "code": code}
    - Push / poll: outbound {"type": "error", "error": message, "code": code}
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(eq=False)
class TeamworkError(Exception):
    """Base error carrying a stable code and its HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(TeamworkError):
    """Malformed input (empty text, non-positive batch size, unknown user)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("VALIDATION_ERROR", 400, message, details)


class NotAuthenticatedError(TeamworkError):
    """No session could be resolved for the request."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__("NOT_AUTHENTICATED", 401, message)


class NoRecipientsError(TeamworkError):
    """The distribution pool resolved to nobody."""

    def __init__(self, message: str = "No recipients available") -> None:
        super().__init__("NO_RECIPIENTS", 400, message)


class NoAssignmentError(TeamworkError):
    """A claim found no pending assignment for the user."""

    def __init__(self, message: str = "No pending assignment") -> None:
        super().__init__("NO_ASSIGNMENT", 404, message)
