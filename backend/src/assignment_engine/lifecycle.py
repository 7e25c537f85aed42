from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from .errors import InvalidTransitionError

STATUS_ORDER = ("pending", "sent", "viewed", "answered")
TERMINAL_STATUSES = frozenset({"answered"})
REMINDABLE_STATUSES = frozenset({"sent", "viewed"})
DELETABLE_STATUSES = frozenset({"pending", "sent", "viewed"})


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_link_token() -> str:
    return uuid.uuid4().hex + uuid.uuid4().hex[:8]


@dataclass
class AssignmentRecord:
    assignment_id: str
    question_id: str
    person_id: str
    unique_link_token: str
    status: str
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    answered_at: datetime | None = None
    reminder_count: int = 0
    last_reminder_at: datetime | None = None
    recording_id: str | None = None
    version: int = 1

    def copy(self) -> AssignmentRecord:
        return replace(self)


def new_assignment(*, question_id: str, person_id: str, now: datetime) -> AssignmentRecord:
    created_at = _coerce_utc(now)
    return AssignmentRecord(
        assignment_id=str(uuid.uuid4()),
        question_id=question_id,
        person_id=person_id,
        unique_link_token=generate_link_token(),
        status="pending",
        created_at=created_at,
        updated_at=created_at,
    )


class AssignmentStateMachine:
    """Sole writer of an assignment's status, transition timestamps and reminder counters.

    Transitions only move forward. Re-entering a state that has already been reached is a
    no-op where the lifecycle allows it (repeat page loads, double answer submissions) and
    an :class:`InvalidTransitionError` where it would skip a step or regress. Every mutator
    returns ``True`` when it changed the record so callers only commit real writes.
    """

    def __init__(self, record: AssignmentRecord) -> None:
        self._record = record

    @property
    def record(self) -> AssignmentRecord:
        return self._record

    @property
    def status(self) -> str:
        return self._record.status

    def mark_sent(self, now: datetime) -> bool:
        record = self._record
        if record.status == "sent":
            return False
        if record.status != "pending":
            raise InvalidTransitionError(current_status=record.status, transition="mark_sent")
        moment = _coerce_utc(now)
        record.status = "sent"
        if record.sent_at is None:
            record.sent_at = moment
        record.updated_at = moment
        return True

    def mark_viewed(self, now: datetime) -> bool:
        record = self._record
        if record.status in {"viewed", "answered"}:
            return False
        if record.status != "sent":
            raise InvalidTransitionError(current_status=record.status, transition="mark_viewed")
        moment = _coerce_utc(now)
        record.status = "viewed"
        if record.viewed_at is None:
            record.viewed_at = moment
        record.updated_at = moment
        return True

    def mark_answered(self, now: datetime, *, recording_id: str | None = None) -> bool:
        record = self._record
        if record.status == "answered":
            return False
        if record.status not in {"sent", "viewed"}:
            raise InvalidTransitionError(current_status=record.status, transition="mark_answered")
        moment = _coerce_utc(now)
        record.status = "answered"
        if record.answered_at is None:
            record.answered_at = moment
        if recording_id is not None and record.recording_id is None:
            record.recording_id = recording_id
        record.updated_at = moment
        return True

    def record_reminder(self, now: datetime) -> bool:
        record = self._record
        if record.status not in REMINDABLE_STATUSES:
            raise InvalidTransitionError(current_status=record.status, transition="record_reminder")
        moment = _coerce_utc(now)
        # last_reminder_at must never precede sent_at.
        if record.sent_at is not None and moment < record.sent_at:
            moment = record.sent_at
        record.reminder_count += 1
        record.last_reminder_at = moment
        record.updated_at = moment
        return True
