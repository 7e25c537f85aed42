from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .lifecycle import AssignmentRecord
from .models import RemindBlockReason

MAX_REMINDERS_PER_ASSIGNMENT = 3

# Index n is the wait before reminder n + 1, measured from the last reminder (or the send).
COOLDOWN_THRESHOLDS = (
    timedelta(hours=24),
    timedelta(hours=72),
    timedelta(days=7),
)


@dataclass(frozen=True)
class RemindEligibility:
    can_remind: bool
    reason: RemindBlockReason | None = None
    cooldown_remaining: timedelta | None = None

    def next_eligible_at(self, now: datetime) -> datetime | None:
        if self.can_remind:
            return now
        if self.cooldown_remaining is None:
            return None
        return now + self.cooldown_remaining

    @property
    def cooldown_display(self) -> str | None:
        if self.cooldown_remaining is None:
            return None
        return format_cooldown(self.cooldown_remaining)


def cooldown_threshold(reminder_count: int) -> timedelta:
    index = min(max(reminder_count, 0), len(COOLDOWN_THRESHOLDS) - 1)
    return COOLDOWN_THRESHOLDS[index]


def evaluate_reminder_eligibility(record: AssignmentRecord, now: datetime) -> RemindEligibility:
    if record.status == "answered":
        return RemindEligibility(can_remind=False, reason="already_answered")

    if record.status == "pending":
        return RemindEligibility(can_remind=False, reason="not_yet_sent")

    if record.reminder_count >= MAX_REMINDERS_PER_ASSIGNMENT:
        return RemindEligibility(can_remind=False, reason="max_reminders_reached")

    threshold = cooldown_threshold(record.reminder_count)
    anchor = record.last_reminder_at or record.sent_at
    if anchor is None:
        return RemindEligibility(can_remind=False, reason="not_yet_sent")

    elapsed = now - anchor
    if elapsed < threshold:
        return RemindEligibility(
            can_remind=False,
            reason="cooldown_active",
            cooldown_remaining=threshold - elapsed,
        )

    return RemindEligibility(can_remind=True)


def next_eligible_after_reminder(reminder_count: int, reminded_at: datetime) -> datetime | None:
    if reminder_count >= MAX_REMINDERS_PER_ASSIGNMENT:
        return None
    return reminded_at + cooldown_threshold(reminder_count)


def format_cooldown(remaining: timedelta) -> str:
    total_seconds = max(int(remaining.total_seconds()), 0)
    days = total_seconds // 86400
    hours = (total_seconds % 86400) // 3600
    minutes = (total_seconds % 3600) // 60

    if days > 0:
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    return f"{max(minutes, 1)}m"
