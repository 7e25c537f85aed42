from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response, status

from .config import Settings
from .dispatcher import DispatchOutcome
from .models import (
    AssignmentCreateRequest,
    AssignmentRemindResponse,
    AssignmentResponse,
    AssignmentSendRequest,
    AssignmentSendResponse,
    DispatchAttemptItem,
    HealthResponse,
    RecordAnswerRequest,
    RecordAnswerResponse,
    RecordingPageResponse,
    ReminderEligibilityResponse,
    RouteClass,
)
from .rate_limit import FixedWindowRateLimiter, RateLimitDecision
from .service import AssignmentService, AssignmentView, EligibilityReport


def _service(request: Request) -> AssignmentService:
    return request.app.state.assignment_service


def _client_ip(request: Request) -> str:
    settings: Settings = request.app.state.settings
    direct_ip = request.client.host if request.client else "unknown"
    if not settings.trust_proxy_headers:
        return direct_ip
    if not settings.trusted_proxy_ips or direct_ip not in settings.trusted_proxy_ips:
        return direct_ip
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded:
        return direct_ip
    trusted_ip = forwarded.split(",")[0].strip()
    return trusted_ip or direct_ip


def _apply_rate_limit(request: Request, response: Response, route_class: RouteClass) -> RateLimitDecision:
    limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
    decision = limiter.enforce(_client_ip(request), route_class)
    response.headers["RateLimit-Limit"] = str(decision.limit)
    response.headers["RateLimit-Remaining"] = str(decision.remaining)
    response.headers["RateLimit-Reset"] = str(decision.reset_seconds)
    return decision


def limit_general(request: Request, response: Response) -> None:
    _apply_rate_limit(request, response, "general")


def limit_send(request: Request, response: Response) -> None:
    _apply_rate_limit(request, response, "send")


def limit_upload(request: Request, response: Response) -> None:
    _apply_rate_limit(request, response, "upload")


router = APIRouter(tags=["assignments"], dependencies=[Depends(limit_general)])
public_router = APIRouter(tags=["recording"], dependencies=[Depends(limit_general)])


def _eligibility_response(report: EligibilityReport) -> ReminderEligibilityResponse:
    eligibility = report.eligibility
    remaining = eligibility.cooldown_remaining
    return ReminderEligibilityResponse(
        assignment_id=report.record.assignment_id,
        can_remind=eligibility.can_remind,
        reason=eligibility.reason,
        cooldown_remaining_seconds=int(remaining.total_seconds()) if remaining is not None else None,
        cooldown_display=eligibility.cooldown_display,
        next_eligible_at=report.next_eligible_at,
        reminder_count=report.record.reminder_count,
    )


def _assignment_response(view: AssignmentView) -> AssignmentResponse:
    record = view.record
    return AssignmentResponse(
        assignment_id=record.assignment_id,
        question_id=record.question_id,
        person_id=record.person_id,
        status=record.status,  # type: ignore[arg-type]
        unique_link_token=record.unique_link_token,
        recording_url=view.recording_url,
        sent_at=record.sent_at,
        viewed_at=record.viewed_at,
        answered_at=record.answered_at,
        reminder_count=record.reminder_count,
        last_reminder_at=record.last_reminder_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        eligibility=_eligibility_response(view.report),
    )


def _attempt_items(outcome: DispatchOutcome) -> list[DispatchAttemptItem]:
    return [
        DispatchAttemptItem(
            channel=attempt.channel,  # type: ignore[arg-type]
            target_masked=attempt.target_masked,
            status=attempt.status,  # type: ignore[arg-type]
            attempted_at=attempt.attempted_at,
            provider_message_id=attempt.provider_message_id,
            error_code=attempt.error_code,
            error_message=attempt.error_message,
        )
        for attempt in outcome.attempts
    ]


@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
def create_assignment(payload: AssignmentCreateRequest, request: Request) -> AssignmentResponse:
    service = _service(request)
    record = service.create_assignment(payload.question_id, payload.person_id)
    return _assignment_response(service.get_assignment(record.assignment_id))


@router.get("/assignments/{assignment_id}", response_model=AssignmentResponse)
def get_assignment(assignment_id: str, request: Request) -> AssignmentResponse:
    return _assignment_response(_service(request).get_assignment(assignment_id))


@router.get("/assignments/{assignment_id}/eligibility", response_model=ReminderEligibilityResponse)
def get_reminder_eligibility(assignment_id: str, request: Request) -> ReminderEligibilityResponse:
    return _eligibility_response(_service(request).check_eligibility(assignment_id))


@router.post(
    "/assignments/{assignment_id}/send",
    response_model=AssignmentSendResponse,
    dependencies=[Depends(limit_send)],
)
def send_assignment(
    assignment_id: str,
    payload: AssignmentSendRequest,
    request: Request,
) -> AssignmentSendResponse:
    receipt = _service(request).send_assignment(assignment_id, payload.channel, payload.custom_message)
    return AssignmentSendResponse(
        message=receipt.message,
        sent_via=payload.channel,
        sent_at=receipt.sent_at,
        sent_count=receipt.outcome.sent,
        failed_count=receipt.outcome.failed,
        attempts=_attempt_items(receipt.outcome),
    )


@router.post(
    "/assignments/{assignment_id}/remind",
    response_model=AssignmentRemindResponse,
    dependencies=[Depends(limit_send)],
)
def remind_assignment(
    assignment_id: str,
    payload: AssignmentSendRequest,
    request: Request,
) -> AssignmentRemindResponse:
    receipt = _service(request).remind_assignment(assignment_id, payload.channel, payload.custom_message)
    return AssignmentRemindResponse(
        message=receipt.message,
        sent_via=payload.channel,
        sent_at=receipt.sent_at,
        sent_count=receipt.outcome.sent,
        failed_count=receipt.outcome.failed,
        attempts=_attempt_items(receipt.outcome),
        reminder_count=receipt.record.reminder_count,
        next_eligible_at=receipt.next_eligible_at,
    )


@router.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_assignment(assignment_id: str, request: Request) -> None:
    _service(request).delete_assignment(assignment_id)


# ---------------------------------------------------------------------------
# Public recording flow (keyed by link token only)
# ---------------------------------------------------------------------------


@public_router.get("/record/{link_token}", response_model=RecordingPageResponse)
def get_recording_page(link_token: str, request: Request) -> RecordingPageResponse:
    page = _service(request).record_view(link_token)
    return RecordingPageResponse(
        question_text=page.question.question_text,
        person_name=page.person.name,
        requester_name=page.question.asker_name,
        journal_title=page.question.journal_title,
        status=page.record.status,  # type: ignore[arg-type]
        already_answered=page.already_answered,
    )


@public_router.post(
    "/record/{link_token}/answer",
    response_model=RecordAnswerResponse,
    dependencies=[Depends(limit_upload)],
)
def submit_answer(link_token: str, payload: RecordAnswerRequest, request: Request) -> RecordAnswerResponse:
    receipt = _service(request).record_answer(link_token, payload.recording_id)
    return RecordAnswerResponse(
        message="Answer already recorded" if receipt.already_answered else "Answer recorded",
        status=receipt.record.status,  # type: ignore[arg-type]
        answered_at=receipt.record.answered_at,
        already_answered=receipt.already_answered,
    )


@public_router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(timestamp=datetime.now(timezone.utc))
