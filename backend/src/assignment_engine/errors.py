from __future__ import annotations

from datetime import datetime, timedelta


class AssignmentEngineError(Exception):
    """Base class for every error the engine surfaces to callers."""

    code = "INTERNAL_ERROR"

    def details(self) -> dict[str, object]:
        return {}


class InvalidTransitionError(AssignmentEngineError):
    """Raised when a lifecycle transition violates pending -> sent -> viewed -> answered."""

    code = "INVALID_TRANSITION"

    def __init__(self, *, current_status: str, transition: str) -> None:
        super().__init__(f"cannot apply {transition} while assignment is {current_status}")
        self.current_status = current_status
        self.transition = transition

    def details(self) -> dict[str, object]:
        return {"current_status": self.current_status, "transition": self.transition}


class ReminderNotAllowedError(AssignmentEngineError):
    """Policy veto from the reminder eligibility evaluator."""

    code = "REMINDER_NOT_ALLOWED"

    def __init__(
        self,
        *,
        reason: str,
        cooldown_remaining: timedelta | None = None,
        next_eligible_at: datetime | None = None,
    ) -> None:
        super().__init__(f"reminder not allowed: {reason}")
        self.reason = reason
        self.cooldown_remaining = cooldown_remaining
        self.next_eligible_at = next_eligible_at

    def details(self) -> dict[str, object]:
        from .eligibility import format_cooldown

        payload: dict[str, object] = {"reason": self.reason}
        if self.cooldown_remaining is not None:
            payload["cooldown_remaining_seconds"] = int(self.cooldown_remaining.total_seconds())
            payload["cooldown_display"] = format_cooldown(self.cooldown_remaining)
        if self.next_eligible_at is not None:
            payload["next_eligible_at"] = self.next_eligible_at.isoformat()
        return payload


class RateLimitedError(AssignmentEngineError):
    """Raised when a client exhausts the budget of a route class for the current window."""

    code = "RATE_LIMITED"

    def __init__(self, *, route_class: str, limit: int, retry_after: timedelta, reset_at: datetime) -> None:
        super().__init__(f"too many {route_class} requests, please try again later")
        self.route_class = route_class
        self.limit = limit
        self.retry_after = retry_after
        self.reset_at = reset_at

    @property
    def retry_after_seconds(self) -> int:
        # Round up so clients never retry a fraction of a second too early.
        seconds = self.retry_after.total_seconds()
        whole = int(seconds)
        return max(1, whole if whole == seconds else whole + 1)

    def details(self) -> dict[str, object]:
        return {
            "route_class": self.route_class,
            "limit": self.limit,
            "retry_after_seconds": self.retry_after_seconds,
            "reset_at": self.reset_at.isoformat(),
        }


class TransportFailureError(AssignmentEngineError):
    """Raised when a dispatch reached zero of its targets."""

    code = "TRANSPORT_FAILURE"

    def __init__(
        self,
        *,
        channel: str,
        sent: int,
        failed: int,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        super().__init__(error_message or f"{channel} delivery failed for all {failed} target(s)")
        self.channel = channel
        self.sent = sent
        self.failed = failed
        self.error_code = error_code

    def details(self) -> dict[str, object]:
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "error_code": self.error_code,
        }


class AssignmentNotFoundError(AssignmentEngineError, KeyError):
    """Raised when an assignment id or link token does not resolve."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, key: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.key = key

    def __str__(self) -> str:
        return f"{self.resource} not found"

    def details(self) -> dict[str, object]:
        return {"resource": self.resource}


class DestinationMissingError(AssignmentEngineError, ValueError):
    """Raised when the person has no address/token for the requested channel."""

    code = "VALIDATION_ERROR"

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(message)
        self.channel = channel

    def details(self) -> dict[str, object]:
        return {"channel": self.channel}


class ConcurrentUpdateError(AssignmentEngineError):
    """Raised by a repository when a compare-and-swap on the record version fails."""

    code = "CONCURRENT_UPDATE"

    def __init__(self, assignment_id: str, expected_version: int) -> None:
        super().__init__(f"assignment {assignment_id} changed since version {expected_version}")
        self.assignment_id = assignment_id
        self.expected_version = expected_version
