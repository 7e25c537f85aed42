from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .assignment_store import AssignmentRepository
from .directory import ContactDirectory, PersonContact, QuestionContext
from .dispatcher import DispatchOutcome, Dispatcher
from .eligibility import RemindEligibility, evaluate_reminder_eligibility, next_eligible_after_reminder
from .errors import (
    AssignmentNotFoundError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    ReminderNotAllowedError,
)
from .keyed_lock import KeyedLock
from .lifecycle import DELETABLE_STATUSES, AssignmentRecord, AssignmentStateMachine, new_assignment
from .messages import compose_answer_received, compose_assignment_message, recording_url

logger = logging.getLogger(__name__)

_MAX_COMMIT_ATTEMPTS = 3


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EligibilityReport:
    record: AssignmentRecord
    eligibility: RemindEligibility
    evaluated_at: datetime

    @property
    def next_eligible_at(self) -> datetime | None:
        return self.eligibility.next_eligible_at(self.evaluated_at)


@dataclass(frozen=True)
class AssignmentView:
    record: AssignmentRecord
    recording_url: str
    report: EligibilityReport


@dataclass(frozen=True)
class DispatchReceipt:
    message: str
    record: AssignmentRecord
    channel: str
    sent_at: datetime
    outcome: DispatchOutcome
    next_eligible_at: datetime | None = None


@dataclass(frozen=True)
class RecordingPage:
    record: AssignmentRecord
    person: PersonContact
    question: QuestionContext

    @property
    def already_answered(self) -> bool:
        return self.record.status == "answered"


@dataclass(frozen=True)
class AnswerReceipt:
    record: AssignmentRecord
    already_answered: bool


class AssignmentService:
    """Orchestrates the assignment lifecycle against storage, policy and delivery.

    Every mutating operation runs under a per-assignment lock so that evaluating eligibility,
    dispatching and committing the transition form one critical section. Commits use the
    repository's version compare-and-swap; on a conflict the transition is re-applied to the
    freshly read record.
    """

    def __init__(
        self,
        *,
        repository: AssignmentRepository,
        directory: ContactDirectory,
        dispatcher: Dispatcher,
        web_app_url: str,
        now_fn: Callable[[], datetime] = _now_utc,
        locks: KeyedLock | None = None,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._dispatcher = dispatcher
        self._web_app_url = web_app_url.rstrip("/")
        self._now_fn = now_fn
        self._locks = locks or KeyedLock()

    def recording_url_for(self, record: AssignmentRecord) -> str:
        return recording_url(self._web_app_url, record.unique_link_token)

    def create_assignment(self, question_id: str, person_id: str) -> AssignmentRecord:
        self._require_question(question_id)
        self._require_person(person_id)
        record = new_assignment(question_id=question_id, person_id=person_id, now=self._now_fn())
        stored = self._repository.add(record)
        logger.info(
            "assignment created id=%s question_id=%s person_id=%s",
            stored.assignment_id,
            question_id,
            person_id,
        )
        return stored

    def get_assignment(self, assignment_id: str) -> AssignmentView:
        record = self._require_assignment(assignment_id)
        return AssignmentView(
            record=record,
            recording_url=self.recording_url_for(record),
            report=self._report(record),
        )

    def check_eligibility(self, assignment_id: str) -> EligibilityReport:
        return self._report(self._require_assignment(assignment_id))

    def send_assignment(
        self,
        assignment_id: str,
        channel: str,
        custom_message: str | None = None,
    ) -> DispatchReceipt:
        with self._locks.hold(assignment_id):
            record = self._require_assignment(assignment_id)
            if record.status == "answered":
                raise InvalidTransitionError(current_status=record.status, transition="send")

            outcome = self._dispatch(record, channel, kind="question", custom_message=custom_message)
            sent_at = self._now_fn()

            def _mark_sent(machine: AssignmentStateMachine) -> bool:
                if machine.status != "pending":
                    return False
                return machine.mark_sent(sent_at)

            committed = self._commit(record, _mark_sent)
            logger.info(
                "assignment sent id=%s channel=%s status=%s sent=%s failed=%s",
                assignment_id,
                channel,
                committed.status,
                outcome.sent,
                outcome.failed,
            )
            return DispatchReceipt(
                message="Link ready to share" if channel == "share" else "Question sent successfully",
                record=committed,
                channel=channel,
                sent_at=sent_at,
                outcome=outcome,
            )

    def remind_assignment(
        self,
        assignment_id: str,
        channel: str,
        custom_message: str | None = None,
    ) -> DispatchReceipt:
        with self._locks.hold(assignment_id):
            record = self._require_assignment(assignment_id)
            now = self._now_fn()
            eligibility = evaluate_reminder_eligibility(record, now)
            if not eligibility.can_remind:
                logger.info(
                    "reminder vetoed id=%s reason=%s cooldown=%s",
                    assignment_id,
                    eligibility.reason,
                    eligibility.cooldown_display,
                )
                raise ReminderNotAllowedError(
                    reason=eligibility.reason or "cooldown_active",
                    cooldown_remaining=eligibility.cooldown_remaining,
                    next_eligible_at=eligibility.next_eligible_at(now),
                )

            outcome = self._dispatch(record, channel, kind="reminder", custom_message=custom_message)
            reminded_at = self._now_fn()
            checked_version = record.version

            def _record_reminder(machine: AssignmentStateMachine) -> bool:
                # Another worker may have committed since the check above; judge the fresh record again.
                if machine.record.version != checked_version and machine.status != "answered":
                    fresh = evaluate_reminder_eligibility(machine.record, reminded_at)
                    if not fresh.can_remind:
                        raise ReminderNotAllowedError(
                            reason=fresh.reason or "cooldown_active",
                            cooldown_remaining=fresh.cooldown_remaining,
                            next_eligible_at=fresh.next_eligible_at(reminded_at),
                        )
                return machine.record_reminder(reminded_at)

            try:
                committed = self._commit(record, _record_reminder)
            except ReminderNotAllowedError as exc:
                logger.warning(
                    "reminder delivered but not recorded id=%s: %s after concurrent update",
                    assignment_id,
                    exc.reason,
                )
                raise
            except InvalidTransitionError as exc:
                # The answer landed between dispatch and commit; the reminder already went out.
                logger.warning(
                    "reminder delivered but not recorded id=%s: assignment became %s",
                    assignment_id,
                    exc.current_status,
                )
                raise ReminderNotAllowedError(reason="already_answered") from exc

            next_eligible_at = next_eligible_after_reminder(
                committed.reminder_count,
                committed.last_reminder_at or reminded_at,
            )
            logger.info(
                "reminder sent id=%s channel=%s reminder_count=%s",
                assignment_id,
                channel,
                committed.reminder_count,
            )
            return DispatchReceipt(
                message="Link ready to share" if channel == "share" else "Reminder sent successfully",
                record=committed,
                channel=channel,
                sent_at=reminded_at,
                outcome=outcome,
                next_eligible_at=next_eligible_at,
            )

    def record_view(self, link_token: str) -> RecordingPage:
        record = self._require_by_token(link_token)
        with self._locks.hold(record.assignment_id):
            record = self._require_by_token(link_token)
            question = self._require_question(record.question_id)
            person = self._require_person(record.person_id)
            viewed_at = self._now_fn()

            def _mark_viewed(machine: AssignmentStateMachine) -> bool:
                # A link opened before the send is recorded leaves the assignment pending.
                if machine.status != "sent":
                    return False
                return machine.mark_viewed(viewed_at)

            committed = self._commit(record, _mark_viewed)
            return RecordingPage(record=committed, person=person, question=question)

    def record_answer(self, link_token: str, recording_id: str) -> AnswerReceipt:
        record = self._require_by_token(link_token)
        with self._locks.hold(record.assignment_id):
            record = self._require_by_token(link_token)
            if record.status == "answered":
                logger.info("duplicate answer ignored id=%s", record.assignment_id)
                return AnswerReceipt(record=record, already_answered=True)

            answered_at = self._now_fn()
            transitioned = False

            def _mark_answered(machine: AssignmentStateMachine) -> bool:
                nonlocal transitioned
                transitioned = machine.mark_answered(answered_at, recording_id=recording_id)
                return transitioned

            committed = self._commit(record, _mark_answered)
            if not transitioned:
                return AnswerReceipt(record=committed, already_answered=True)
        logger.info("assignment answered id=%s recording_id=%s", committed.assignment_id, recording_id)
        self._notify_asker(committed)
        return AnswerReceipt(record=committed, already_answered=False)

    def delete_assignment(self, assignment_id: str) -> None:
        with self._locks.hold(assignment_id):
            record = self._require_assignment(assignment_id)
            for _ in range(_MAX_COMMIT_ATTEMPTS):
                if record.status not in DELETABLE_STATUSES:
                    raise InvalidTransitionError(current_status=record.status, transition="delete")
                try:
                    self._repository.delete(assignment_id, expected_version=record.version)
                except ConcurrentUpdateError:
                    logger.warning("delete conflict id=%s version=%s, retrying", assignment_id, record.version)
                    record = self._require_assignment(assignment_id)
                    continue
                logger.info("assignment deleted id=%s", assignment_id)
                return
            raise ConcurrentUpdateError(assignment_id, record.version)

    def _report(self, record: AssignmentRecord) -> EligibilityReport:
        now = self._now_fn()
        return EligibilityReport(
            record=record,
            eligibility=evaluate_reminder_eligibility(record, now),
            evaluated_at=now,
        )

    def _dispatch(
        self,
        record: AssignmentRecord,
        channel: str,
        *,
        kind: str,
        custom_message: str | None,
    ) -> DispatchOutcome:
        if channel == "share":
            return self._dispatcher.dispatch(record, channel, None)

        question = self._require_question(record.question_id)
        person = self._require_person(record.person_id)
        message = compose_assignment_message(
            kind=kind,  # type: ignore[arg-type]
            channel=channel,
            person=person,
            question=question,
            link=self.recording_url_for(record),
            custom_message=custom_message,
        )
        return self._dispatcher.dispatch(record, channel, message).require_success()

    def _commit(
        self,
        record: AssignmentRecord,
        mutate: Callable[[AssignmentStateMachine], bool],
    ) -> AssignmentRecord:
        current = record
        for attempt in range(1, _MAX_COMMIT_ATTEMPTS + 1):
            working = current.copy()
            if not mutate(AssignmentStateMachine(working)):
                return current
            try:
                return self._repository.save(working, expected_version=current.version)
            except ConcurrentUpdateError:
                logger.warning(
                    "concurrent update on assignment %s at version %s (attempt %s), re-reading",
                    current.assignment_id,
                    current.version,
                    attempt,
                )
                current = self._require_assignment(current.assignment_id)
        raise ConcurrentUpdateError(current.assignment_id, current.version)

    def _notify_asker(self, record: AssignmentRecord) -> None:
        try:
            self._send_answer_notifications(record)
        except Exception:  # noqa: BLE001
            logger.exception("answer notification failed for %s", record.assignment_id)

    def _send_answer_notifications(self, record: AssignmentRecord) -> None:
        question = self._directory.get_question(record.question_id)
        person = self._directory.get_person(record.person_id)
        if question is None or person is None:
            logger.warning("answer notification skipped id=%s: contact data missing", record.assignment_id)
            return

        deliveries: list[tuple[str, list[str]]] = []
        if question.asker_push_tokens:
            deliveries.append(("push", [token for token in question.asker_push_tokens if token]))
        if question.asker_email:
            deliveries.append(("email", [question.asker_email]))

        for channel, targets in deliveries:
            if not targets:
                continue
            message = compose_answer_received(
                channel=channel,
                person=person,
                question=question,
                recording_id=record.recording_id,
            )
            try:
                outcome = self._dispatcher.deliver(
                    channel,
                    targets,
                    message,
                    idempotency_prefix=f"{record.assignment_id}-answered",
                )
            except Exception:  # noqa: BLE001
                logger.exception("answer notification via %s failed for %s", channel, record.assignment_id)
                continue
            if not outcome.succeeded:
                logger.warning(
                    "answer notification via %s not delivered for %s: failed=%s",
                    channel,
                    record.assignment_id,
                    outcome.failed,
                )

    def _require_assignment(self, assignment_id: str) -> AssignmentRecord:
        record = self._repository.get(assignment_id)
        if record is None:
            raise AssignmentNotFoundError("Assignment", assignment_id)
        return record

    def _require_by_token(self, link_token: str) -> AssignmentRecord:
        record = self._repository.get_by_link_token(link_token)
        if record is None:
            raise AssignmentNotFoundError("Assignment", link_token)
        return record

    def _require_person(self, person_id: str) -> PersonContact:
        person = self._directory.get_person(person_id)
        if person is None:
            raise AssignmentNotFoundError("Person", person_id)
        return person

    def _require_question(self, question_id: str) -> QuestionContext:
        question = self._directory.get_question(question_id)
        if question is None:
            raise AssignmentNotFoundError("Question", question_id)
        return question
