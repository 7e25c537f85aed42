from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from .directory import ContactDirectory, PersonContact
from .errors import AssignmentNotFoundError, DestinationMissingError, TransportFailureError
from .lifecycle import AssignmentRecord
from .messages import ComposedMessage
from .transports import ChannelTransport, TransportMessage, TransportResult, mask_contact_target

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DispatchAttempt:
    channel: str
    target_masked: str
    attempted_at: datetime
    status: str
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    channel: str
    attempts: tuple[DispatchAttempt, ...] = field(default_factory=tuple)

    @property
    def sent(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.status == "sent")

    @property
    def failed(self) -> int:
        return sum(1 for attempt in self.attempts if attempt.status == "failed")

    @property
    def succeeded(self) -> bool:
        if self.channel == "share":
            return True
        return self.sent > 0

    def require_success(self) -> DispatchOutcome:
        if self.succeeded:
            return self
        first_failure = next((attempt for attempt in self.attempts if attempt.status == "failed"), None)
        raise TransportFailureError(
            channel=self.channel,
            sent=self.sent,
            failed=self.failed,
            error_code=first_failure.error_code if first_failure else None,
            error_message=(
                f"{self.channel} delivery failed for all {self.failed} target(s)"
                if self.failed
                else f"{self.channel} delivery had no targets"
            ),
        )


class Dispatcher:
    """Delivers composed messages through the channel transports.

    The dispatcher only reads assignment data to address a send; it never changes the
    assignment. Each target is sent independently and bounded by ``timeout_seconds``; a
    timeout or transport exception counts as one failed target and is not retried.

    A timed-out call keeps its pool worker until the transport itself returns, so transports
    must bound their own I/O (``HttpTransport`` passes its timeout to urllib). Size
    ``max_workers`` for the number of targets expected in flight at once.
    """

    def __init__(
        self,
        *,
        transports: dict[str, ChannelTransport],
        directory: ContactDirectory,
        timeout_seconds: float = 10,
        max_workers: int = 8,
    ) -> None:
        self._transports = dict(transports)
        self._directory = directory
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def dispatch(
        self,
        assignment: AssignmentRecord,
        channel: str,
        message: ComposedMessage | None,
    ) -> DispatchOutcome:
        if channel == "share":
            logger.info("share dispatch for assignment %s: link only", assignment.assignment_id)
            return DispatchOutcome(channel="share")
        if message is None:
            raise ValueError(f"a composed message is required for channel: {channel}")

        person = self._directory.get_person(assignment.person_id)
        if person is None:
            raise AssignmentNotFoundError("Person", assignment.person_id)
        targets = resolve_targets(person, channel)
        return self.deliver(
            channel,
            targets,
            message,
            idempotency_prefix=f"{assignment.assignment_id}-{assignment.reminder_count}",
        )

    def deliver(
        self,
        channel: str,
        targets: Sequence[str],
        message: ComposedMessage,
        *,
        idempotency_prefix: str,
    ) -> DispatchOutcome:
        transport = self._transports.get(channel)
        if transport is None:
            raise ValueError(f"no transport configured for channel: {channel}")

        submitted: list[tuple[str, Future[TransportResult]]] = []
        for index, target in enumerate(targets):
            payload = TransportMessage(
                channel=channel,  # type: ignore[arg-type]
                target=target,
                subject=message.subject,
                body=message.body,
                html=message.html,
                data=dict(message.data),
                idempotency_key=f"{idempotency_prefix}-{channel}-{index}",
            )
            submitted.append((target, self._executor.submit(transport.send, payload)))

        deadline = time.monotonic() + self._timeout_seconds
        attempts: list[DispatchAttempt] = []
        for target, future in submitted:
            masked = mask_contact_target(target, channel)
            attempt = self._collect(channel, masked, future, max(deadline - time.monotonic(), 0))
            attempts.append(attempt)
            logger.info(
                "dispatch attempt channel=%s target=%s status=%s message_id=%s error_code=%s",
                channel,
                masked,
                attempt.status,
                attempt.provider_message_id,
                attempt.error_code,
            )

        outcome = DispatchOutcome(channel=channel, attempts=tuple(attempts))
        if outcome.failed and outcome.sent:
            logger.warning("partial %s delivery: sent=%s failed=%s", channel, outcome.sent, outcome.failed)
        return outcome

    def _collect(
        self,
        channel: str,
        masked: str,
        future: Future[TransportResult],
        timeout: float,
    ) -> DispatchAttempt:
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            return DispatchAttempt(
                channel=channel,
                target_masked=masked,
                attempted_at=_now_utc(),
                status="failed",
                error_code="timeout",
                error_message=f"{channel} transport did not respond within {self._timeout_seconds}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s transport raised for target %s", channel, masked)
            return DispatchAttempt(
                channel=channel,
                target_masked=masked,
                attempted_at=_now_utc(),
                status="failed",
                error_code="transport_error",
                error_message=str(exc),
            )

        return DispatchAttempt(
            channel=channel,
            target_masked=masked,
            attempted_at=result.attempted_at,
            status="sent" if result.status == "sent" else "failed",
            provider_message_id=result.provider_message_id,
            error_code=result.error_code,
            error_message=result.error_message,
        )


def resolve_targets(person: PersonContact, channel: str) -> list[str]:
    if channel == "sms":
        if not person.phone_number:
            raise DestinationMissingError(channel, "Person does not have a phone number")
        return [person.phone_number]
    if channel == "email":
        if not person.email:
            raise DestinationMissingError(channel, "Person does not have an email address")
        return [person.email]
    if channel == "push":
        tokens = [token for token in person.push_tokens if token]
        if not tokens:
            raise DestinationMissingError(channel, "Person does not have a registered device")
        return tokens
    raise ValueError(f"unsupported channel: {channel}")
