from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

from .models import TransportChannel

logger = logging.getLogger(__name__)

TransportResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class TransportMessage:
    channel: TransportChannel
    target: str
    subject: str
    body: str
    idempotency_key: str
    html: str | None = None
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportResult:
    status: TransportResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ChannelTransport(Protocol):
    channel: TransportChannel

    def send(self, message: TransportMessage) -> TransportResult: ...


class StubTransport:
    """Mock transport for development: logs the message and reports success.

    A target containing ``fail`` is rejected so failure paths can be exercised end to end.
    """

    channel: TransportChannel

    def __init__(self, channel: TransportChannel) -> None:
        self.channel = channel

    def send(self, message: TransportMessage) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)

        if message.channel != self.channel:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"{self.channel} transport cannot deliver {message.channel} messages",
            )

        if "fail" in message.target.lower():
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub transport forced failure for target",
            )

        logger.info(
            "mock %s delivery to %s: %s",
            self.channel,
            mask_contact_target(message.target, self.channel),
            message.subject,
        )
        message_id = f"stub-{self.channel}-{int(attempted_at.timestamp() * 1000)}"
        return TransportResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class StubSmsTransport(StubTransport):
    def __init__(self) -> None:
        super().__init__("sms")


class StubEmailTransport(StubTransport):
    def __init__(self) -> None:
        super().__init__("email")


class StubPushTransport(StubTransport):
    def __init__(self) -> None:
        super().__init__("push")


class _TransportSendError(Exception):
    """Internal error raised when a gateway HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpTransport:
    """Delivers one channel's messages through the notification gateway over HTTP."""

    channel: TransportChannel

    def __init__(
        self,
        *,
        channel: TransportChannel,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self.channel = channel
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send(self, message: TransportMessage) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)

        if message.channel != self.channel:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error_message=f"{self.channel} transport cannot deliver {message.channel} messages",
            )

        request_payload: dict[str, object] = {
            "channel": message.channel,
            "recipient": message.target,
            "subject": message.subject,
            "message": message.body,
            "idempotency_key": message.idempotency_key,
        }
        if message.html is not None:
            request_payload["html"] = message.html
        if message.data:
            request_payload["data"] = dict(message.data)

        try:
            response_data = self._post(request_payload)
        except _TransportSendError as exc:
            masked = mask_contact_target(message.target, message.channel)
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )

        message_id = response_data.get("message_id")
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id if isinstance(message_id, str) else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _TransportSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _TransportSendError(
                    error_code="timeout",
                    message=f"Request timed out: {exc.reason}",
                ) from exc
            raise _TransportSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TransportSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _TransportSendError(
                error_code="invalid_response",
                message="Gateway returned a non-JSON response",
            ) from exc


def create_transports(
    *,
    sender_type: str,
    base_url: str = "",
    api_key: str = "",
    timeout_seconds: float = 10,
) -> dict[str, ChannelTransport]:
    normalized = sender_type.strip().lower()
    if normalized == "http":
        return {
            channel: HttpTransport(
                channel=channel,
                base_url=base_url,
                api_key=api_key,
                timeout_seconds=timeout_seconds,
            )
            for channel in ("sms", "email", "push")
        }
    if normalized == "stub":
        return {
            "sms": StubSmsTransport(),
            "email": StubEmailTransport(),
            "push": StubPushTransport(),
        }
    raise RuntimeError(f"unsupported NOTIFIER_SENDER_TYPE: {sender_type}")


def mask_contact_target(contact_target: str, channel: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if channel == "push" and len(normalized) > 12:
        return f"{normalized[:8]}..."

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
