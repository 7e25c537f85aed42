from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

AssignmentStatus = Literal["pending", "sent", "viewed", "answered"]
SendChannel = Literal["sms", "email", "push", "share"]
TransportChannel = Literal["sms", "email", "push"]
RemindBlockReason = Literal[
    "already_answered",
    "not_yet_sent",
    "max_reminders_reached",
    "cooldown_active",
]
RouteClass = Literal["general", "auth", "upload", "send"]
DispatchAttemptStatus = Literal["sent", "failed"]


class AssignmentCreateRequest(BaseModel):
    question_id: str = Field(min_length=1, max_length=128)
    person_id: str = Field(min_length=1, max_length=128)

    @field_validator("question_id", "person_id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("identifiers cannot be blank")
        return normalized


class AssignmentSendRequest(BaseModel):
    channel: SendChannel
    custom_message: str | None = Field(default=None, max_length=500)

    @field_validator("custom_message")
    @classmethod
    def _normalize_message(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class RecordAnswerRequest(BaseModel):
    recording_id: str = Field(min_length=1, max_length=128)


class ReminderEligibilityResponse(BaseModel):
    assignment_id: str
    can_remind: bool
    reason: RemindBlockReason | None = None
    cooldown_remaining_seconds: int | None = None
    cooldown_display: str | None = None
    next_eligible_at: datetime | None = None
    reminder_count: int


class AssignmentResponse(BaseModel):
    assignment_id: str
    question_id: str
    person_id: str
    status: AssignmentStatus
    unique_link_token: str
    recording_url: str
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    answered_at: datetime | None = None
    reminder_count: int
    last_reminder_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    eligibility: ReminderEligibilityResponse | None = None


class DispatchAttemptItem(BaseModel):
    channel: TransportChannel
    target_masked: str
    status: DispatchAttemptStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class AssignmentSendResponse(BaseModel):
    message: str
    sent_via: SendChannel
    sent_at: datetime
    sent_count: int = 0
    failed_count: int = 0
    attempts: list[DispatchAttemptItem] = Field(default_factory=list)


class AssignmentRemindResponse(AssignmentSendResponse):
    reminder_count: int
    next_eligible_at: datetime | None = None


class RecordingPageResponse(BaseModel):
    question_text: str
    person_name: str
    requester_name: str
    journal_title: str
    status: AssignmentStatus
    already_answered: bool


class RecordAnswerResponse(BaseModel):
    message: str
    status: AssignmentStatus
    answered_at: datetime | None = None
    already_answered: bool = False


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    timestamp: datetime
