from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import pytest

from assignment_engine.assignment_store import InMemoryAssignmentRepository
from assignment_engine.directory import InMemoryContactDirectory, PersonContact, QuestionContext
from assignment_engine.dispatcher import Dispatcher
from assignment_engine.errors import (
    AssignmentNotFoundError,
    DestinationMissingError,
    InvalidTransitionError,
    ReminderNotAllowedError,
    TransportFailureError,
)
from assignment_engine.lifecycle import AssignmentStateMachine
from assignment_engine.service import AssignmentService
from assignment_engine.transports import TransportMessage, TransportResult

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WEB_APP_URL = "https://app.example.test"


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class _RecordingTransport:
    def __init__(self, channel: str, failing_targets: set[str] | None = None) -> None:
        self.channel = channel
        self.failing_targets = failing_targets or set()
        self.sent: list[TransportMessage] = []
        self.on_send: Callable[[TransportMessage], None] | None = None
        self._lock = threading.Lock()

    def send(self, message: TransportMessage) -> TransportResult:
        with self._lock:
            self.sent.append(message)
        if self.on_send is not None:
            self.on_send(message)
        if message.target in self.failing_targets:
            return TransportResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="rejected",
                error_message="target rejected",
            )
        return TransportResult(status="sent", attempted_at=datetime.now(timezone.utc), provider_message_id="msg-1")


class _Harness:
    def __init__(self, clock: _Clock, push_tokens: tuple[str, ...], failing_targets: set[str]) -> None:
        self.clock = clock
        self.directory = InMemoryContactDirectory()
        self.directory.upsert_person(
            PersonContact(
                person_id="p-1",
                name="Grandpa Joe",
                phone_number="+15555550123",
                email="joe@example.com",
                push_tokens=push_tokens,
            )
        )
        self.directory.upsert_question(
            QuestionContext(
                question_id="q-1",
                question_text="What was the first job you ever had, and what did it teach you about work?",
                journal_title="Family Stories",
                asker_name="Maya",
                asker_email="maya@example.com",
                asker_push_tokens=("asker-token-000000000",),
            )
        )
        self.transports = {
            channel: _RecordingTransport(channel, failing_targets) for channel in ("sms", "email", "push")
        }
        self.repository = InMemoryAssignmentRepository()
        self.dispatcher = Dispatcher(transports=self.transports, directory=self.directory)  # type: ignore[arg-type]
        self.service = AssignmentService(
            repository=self.repository,
            directory=self.directory,
            dispatcher=self.dispatcher,
            web_app_url=WEB_APP_URL,
            now_fn=clock,
        )

    def sent_assignment(self) -> str:
        record = self.service.create_assignment("q-1", "p-1")
        self.service.send_assignment(record.assignment_id, "sms")
        return record.assignment_id


@pytest.fixture
def make_harness() -> Iterator[Callable[..., _Harness]]:
    created: list[_Harness] = []

    def _make(
        *,
        push_tokens: tuple[str, ...] = ("device-token-1111111", "device-token-2222222", "device-token-3333333"),
        failing_targets: set[str] | None = None,
    ) -> _Harness:
        harness = _Harness(_Clock(T0), push_tokens, failing_targets or set())
        created.append(harness)
        return harness

    yield _make
    for harness in created:
        harness.dispatcher.close()


def test_create_assignment_starts_pending(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")

    assert record.status == "pending"
    view = harness.service.get_assignment(record.assignment_id)
    assert view.recording_url == f"{WEB_APP_URL}/record/{record.unique_link_token}"
    assert view.report.eligibility.reason == "not_yet_sent"


def test_create_assignment_requires_known_person_and_question(make_harness) -> None:
    harness = make_harness()
    with pytest.raises(AssignmentNotFoundError, match="Person"):
        harness.service.create_assignment("q-1", "p-missing")
    with pytest.raises(AssignmentNotFoundError, match="Question"):
        harness.service.create_assignment("q-missing", "p-1")


def test_send_marks_sent_and_delivers_link(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")

    receipt = harness.service.send_assignment(record.assignment_id, "sms")

    assert receipt.message == "Question sent successfully"
    assert receipt.sent_at == T0
    assert receipt.record.status == "sent"
    assert receipt.record.sent_at == T0
    [message] = harness.transports["sms"].sent
    assert message.target == "+15555550123"
    assert message.body.startswith("Hi Grandpa Joe! Maya would like to ask you:")
    assert message.body.endswith(f"{WEB_APP_URL}/record/{record.unique_link_token}")


def test_custom_message_replaces_greeting_but_keeps_link(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")

    harness.service.send_assignment(record.assignment_id, "sms", "Dad, tell us this one!")

    [message] = harness.transports["sms"].sent
    assert message.body.startswith("Dad, tell us this one!")
    assert f"/record/{record.unique_link_token}" in message.body


def test_repeat_send_only_dispatches(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(hours=3))

    receipt = harness.service.send_assignment(assignment_id, "email")

    assert receipt.sent_at == T0 + timedelta(hours=3)
    assert receipt.record.sent_at == T0
    assert receipt.record.status == "sent"
    assert len(harness.transports["email"].sent) == 1


def test_share_marks_sent_without_transport_calls(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")

    receipt = harness.service.send_assignment(record.assignment_id, "share")

    assert receipt.message == "Link ready to share"
    assert receipt.record.status == "sent"
    assert receipt.outcome.attempts == ()
    assert all(not transport.sent for transport in harness.transports.values())


def test_send_after_answer_is_invalid(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    record = harness.repository.get(assignment_id)
    harness.service.record_answer(record.unique_link_token, "rec-1")

    with pytest.raises(InvalidTransitionError):
        harness.service.send_assignment(assignment_id, "sms")


def test_remind_immediately_after_send_reports_full_cooldown(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()

    with pytest.raises(ReminderNotAllowedError) as exc_info:
        harness.service.remind_assignment(assignment_id, "sms")

    error = exc_info.value
    assert error.reason == "cooldown_active"
    assert error.cooldown_remaining == timedelta(hours=24)
    assert error.next_eligible_at == T0 + timedelta(hours=24)
    assert error.details()["cooldown_display"] == "1d"
    assert len(harness.transports["sms"].sent) == 1


def test_escalating_reminder_schedule_and_cap(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()

    harness.clock.advance(timedelta(hours=24))
    first = harness.service.remind_assignment(assignment_id, "sms")
    assert first.message == "Reminder sent successfully"
    assert first.record.reminder_count == 1
    assert first.next_eligible_at == T0 + timedelta(hours=24 + 72)

    harness.clock.advance(timedelta(hours=71))
    with pytest.raises(ReminderNotAllowedError) as blocked:
        harness.service.remind_assignment(assignment_id, "sms")
    assert blocked.value.cooldown_remaining == timedelta(hours=1)

    harness.clock.advance(timedelta(hours=1))
    second = harness.service.remind_assignment(assignment_id, "email")
    assert second.record.reminder_count == 2
    assert second.next_eligible_at == harness.clock.now + timedelta(days=7)

    harness.clock.advance(timedelta(days=7))
    third = harness.service.remind_assignment(assignment_id, "push")
    assert third.record.reminder_count == 3
    assert third.next_eligible_at is None

    harness.clock.advance(timedelta(days=60))
    with pytest.raises(ReminderNotAllowedError) as capped:
        harness.service.remind_assignment(assignment_id, "sms")
    assert capped.value.reason == "max_reminders_reached"

    sms_bodies = [message.body for message in harness.transports["sms"].sent]
    assert sms_bodies[-1].startswith("Reminder: Maya is still waiting for your answer to:")


def test_remind_after_answer_is_already_answered(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token
    harness.clock.advance(timedelta(hours=1))
    harness.service.record_answer(token, "rec-1")

    harness.clock.advance(timedelta(days=3))
    with pytest.raises(ReminderNotAllowedError) as exc_info:
        harness.service.remind_assignment(assignment_id, "sms")
    assert exc_info.value.reason == "already_answered"


def test_remind_pending_assignment_is_not_yet_sent(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")
    with pytest.raises(ReminderNotAllowedError) as exc_info:
        harness.service.remind_assignment(record.assignment_id, "sms")
    assert exc_info.value.reason == "not_yet_sent"


def test_partial_push_delivery_advances_state(make_harness) -> None:
    harness = make_harness(failing_targets={"device-token-1111111", "device-token-2222222"})
    record = harness.service.create_assignment("q-1", "p-1")

    receipt = harness.service.send_assignment(record.assignment_id, "push")

    assert receipt.outcome.sent == 1
    assert receipt.outcome.failed == 2
    assert harness.repository.get(record.assignment_id).status == "sent"


def test_total_push_failure_leaves_state_untouched(make_harness) -> None:
    harness = make_harness(
        push_tokens=("device-token-1111111", "device-token-2222222"),
        failing_targets={"device-token-1111111", "device-token-2222222"},
    )
    record = harness.service.create_assignment("q-1", "p-1")

    with pytest.raises(TransportFailureError) as exc_info:
        harness.service.send_assignment(record.assignment_id, "push")

    assert exc_info.value.failed == 2
    stored = harness.repository.get(record.assignment_id)
    assert stored.status == "pending"
    assert stored.sent_at is None
    assert stored.version == record.version


def test_failed_reminder_does_not_consume_budget(make_harness) -> None:
    harness = make_harness(failing_targets={"joe@example.com"})
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(days=2))

    with pytest.raises(TransportFailureError):
        harness.service.remind_assignment(assignment_id, "email")

    stored = harness.repository.get(assignment_id)
    assert stored.reminder_count == 0
    assert stored.last_reminder_at is None


def test_missing_destination_is_rejected_before_state_change(make_harness) -> None:
    harness = make_harness(push_tokens=())
    record = harness.service.create_assignment("q-1", "p-1")
    with pytest.raises(DestinationMissingError):
        harness.service.send_assignment(record.assignment_id, "push")
    assert harness.repository.get(record.assignment_id).status == "pending"


def test_record_view_marks_viewed_and_returns_page(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token
    harness.clock.advance(timedelta(minutes=30))

    page = harness.service.record_view(token)
    again = harness.service.record_view(token)

    assert page.record.status == "viewed"
    assert page.record.viewed_at == T0 + timedelta(minutes=30)
    assert again.record.viewed_at == page.record.viewed_at
    assert page.person.name == "Grandpa Joe"
    assert page.question.asker_name == "Maya"
    assert page.already_answered is False


def test_record_view_before_send_keeps_pending(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")
    page = harness.service.record_view(record.unique_link_token)
    assert page.record.status == "pending"


def test_unknown_link_token_is_not_found(make_harness) -> None:
    harness = make_harness()
    with pytest.raises(AssignmentNotFoundError):
        harness.service.record_view("not-a-token")
    with pytest.raises(AssignmentNotFoundError):
        harness.service.record_answer("not-a-token", "rec-1")


def test_record_answer_is_idempotent_and_notifies_asker_once(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token
    harness.clock.advance(timedelta(hours=2))

    first = harness.service.record_answer(token, "rec-1")
    harness.clock.advance(timedelta(minutes=5))
    second = harness.service.record_answer(token, "rec-2")

    assert first.already_answered is False
    assert first.record.answered_at == T0 + timedelta(hours=2)
    assert second.already_answered is True
    assert second.record.recording_id == "rec-1"
    assert second.record.answered_at == first.record.answered_at

    [push] = harness.transports["push"].sent
    assert push.target == "asker-token-000000000"
    assert push.subject == "Grandpa Joe answered your question!"
    assert push.data["recordingId"] == "rec-1"
    [email] = harness.transports["email"].sent
    assert email.target == "maya@example.com"


def test_answer_notification_failure_is_not_surfaced(make_harness) -> None:
    harness = make_harness(failing_targets={"maya@example.com", "asker-token-000000000"})
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token

    receipt = harness.service.record_answer(token, "rec-1")

    assert receipt.record.status == "answered"


def test_answer_before_send_is_invalid(make_harness) -> None:
    harness = make_harness()
    record = harness.service.create_assignment("q-1", "p-1")
    with pytest.raises(InvalidTransitionError):
        harness.service.record_answer(record.unique_link_token, "rec-1")


def test_delete_only_non_terminal(make_harness) -> None:
    harness = make_harness()
    pending = harness.service.create_assignment("q-1", "p-1")
    harness.service.delete_assignment(pending.assignment_id)
    with pytest.raises(AssignmentNotFoundError):
        harness.service.get_assignment(pending.assignment_id)

    answered_id = harness.sent_assignment()
    token = harness.repository.get(answered_id).unique_link_token
    harness.service.record_answer(token, "rec-1")
    with pytest.raises(InvalidTransitionError):
        harness.service.delete_assignment(answered_id)


def test_check_eligibility_reports_formatted_cooldown(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(hours=20, minutes=30))

    report = harness.service.check_eligibility(assignment_id)

    assert report.eligibility.can_remind is False
    assert report.eligibility.cooldown_display == "3h 30m"
    assert report.next_eligible_at == T0 + timedelta(hours=24)


def test_concurrent_reminders_record_exactly_one(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(days=1))
    barrier = threading.Barrier(4)

    def _remind() -> str:
        barrier.wait()
        try:
            harness.service.remind_assignment(assignment_id, "sms")
        except ReminderNotAllowedError as exc:
            return exc.reason
        return "sent"

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: _remind(), range(4)))

    assert results.count("sent") == 1
    assert results.count("cooldown_active") == 3
    assert harness.repository.get(assignment_id).reminder_count == 1
    # One question SMS plus one reminder.
    assert len(harness.transports["sms"].sent) == 2


def test_answer_landing_during_reminder_dispatch_wins(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(days=1))

    def _answer_elsewhere(_: TransportMessage) -> None:
        # Another process answers while the reminder is in flight.
        current = harness.repository.get(assignment_id)
        AssignmentStateMachine(current).mark_answered(harness.clock.now, recording_id="rec-9")
        harness.repository.save(current, expected_version=current.version)

    harness.transports["sms"].on_send = _answer_elsewhere

    with pytest.raises(ReminderNotAllowedError) as exc_info:
        harness.service.remind_assignment(assignment_id, "sms")

    assert exc_info.value.reason == "already_answered"
    stored = harness.repository.get(assignment_id)
    assert stored.status == "answered"
    assert stored.reminder_count == 0


def test_reminder_from_another_worker_during_dispatch_is_not_double_counted(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    harness.clock.advance(timedelta(days=1))

    other_transports = {channel: _RecordingTransport(channel) for channel in ("sms", "email", "push")}
    other_dispatcher = Dispatcher(transports=other_transports, directory=harness.directory)  # type: ignore[arg-type]
    other_worker = AssignmentService(
        repository=harness.repository,
        directory=harness.directory,
        dispatcher=other_dispatcher,
        web_app_url=WEB_APP_URL,
        now_fn=harness.clock,
    )

    def _remind_elsewhere(_: TransportMessage) -> None:
        other_worker.remind_assignment(assignment_id, "sms")

    harness.transports["sms"].on_send = _remind_elsewhere
    try:
        with pytest.raises(ReminderNotAllowedError) as exc_info:
            harness.service.remind_assignment(assignment_id, "sms")
    finally:
        other_dispatcher.close()

    assert exc_info.value.reason == "cooldown_active"
    stored = harness.repository.get(assignment_id)
    assert stored.reminder_count == 1
    assert stored.last_reminder_at == harness.clock.now
    assert len(other_transports["sms"].sent) == 1


def test_reminder_cap_holds_when_another_worker_sends_the_last_one(make_harness) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    for delay in (timedelta(hours=24), timedelta(hours=72)):
        harness.clock.advance(delay)
        harness.service.remind_assignment(assignment_id, "sms")
    harness.clock.advance(timedelta(days=7))

    other_dispatcher = Dispatcher(
        transports={channel: _RecordingTransport(channel) for channel in ("sms", "email", "push")},  # type: ignore[arg-type]
        directory=harness.directory,
    )
    other_worker = AssignmentService(
        repository=harness.repository,
        directory=harness.directory,
        dispatcher=other_dispatcher,
        web_app_url=WEB_APP_URL,
        now_fn=harness.clock,
    )
    harness.transports["sms"].on_send = lambda _: other_worker.remind_assignment(assignment_id, "sms")
    try:
        with pytest.raises(ReminderNotAllowedError) as exc_info:
            harness.service.remind_assignment(assignment_id, "sms")
    finally:
        other_dispatcher.close()

    assert exc_info.value.reason == "max_reminders_reached"
    assert harness.repository.get(assignment_id).reminder_count == 3


def test_answer_is_kept_when_directory_fails_during_notification(make_harness, monkeypatch) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token

    def _unavailable(question_id: str) -> None:
        raise ConnectionError("directory unavailable")

    monkeypatch.setattr(harness.directory, "get_question", _unavailable)

    receipt = harness.service.record_answer(token, "rec-1")

    assert receipt.already_answered is False
    assert receipt.record.status == "answered"
    assert harness.repository.get(assignment_id).status == "answered"
    assert harness.transports["email"].sent == []


def test_answer_is_kept_when_notification_delivery_raises(make_harness, monkeypatch) -> None:
    harness = make_harness()
    assignment_id = harness.sent_assignment()
    token = harness.repository.get(assignment_id).unique_link_token

    def _shut_down(*args: object, **kwargs: object) -> None:
        raise RuntimeError("cannot schedule new futures after shutdown")

    monkeypatch.setattr(harness.dispatcher, "deliver", _shut_down)

    receipt = harness.service.record_answer(token, "rec-1")

    assert receipt.record.status == "answered"
