from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Literal

from .directory import PersonContact, QuestionContext

MessageKind = Literal["question", "reminder"]

_EXCERPT_LENGTH = 50


@dataclass(frozen=True)
class ComposedMessage:
    subject: str
    body: str
    html: str | None = None
    data: dict[str, str] = field(default_factory=dict)


def excerpt(text: str, length: int = _EXCERPT_LENGTH) -> str:
    if len(text) <= length:
        return text
    return f"{text[:length]}..."


def recording_url(base_url: str, link_token: str) -> str:
    return f"{base_url.rstrip('/')}/record/{link_token}"


def compose_assignment_message(
    *,
    kind: MessageKind,
    channel: str,
    person: PersonContact,
    question: QuestionContext,
    link: str,
    custom_message: str | None = None,
) -> ComposedMessage:
    asker = question.asker_name
    quoted = excerpt(question.question_text)

    if channel == "sms":
        if custom_message:
            body = f'{custom_message} "{quoted}" Record your answer here: {link}'
        elif kind == "reminder":
            body = f'Reminder: {asker} is still waiting for your answer to: "{quoted}" Record here: {link}'
        else:
            body = f'Hi {person.name}! {asker} would like to ask you: "{quoted}" Record your answer here: {link}'
        return ComposedMessage(subject=f"{asker} has a question for you", body=body)

    if channel == "email":
        subject = (
            f"Reminder: {asker} is waiting for your answer"
            if kind == "reminder"
            else f"{asker} has a question for you"
        )
        greeting = custom_message or (
            f"{asker} is still waiting for your answer to:"
            if kind == "reminder"
            else f"{asker} would like to ask you:"
        )
        text = f'Hi {person.name}! {greeting} "{question.question_text}". Record your answer here: {link}'
        safe_link = html.escape(link, quote=True)
        body_html = (
            f"<h1>Hi {html.escape(person.name)}!</h1>\n"
            f"<p>{html.escape(greeting)}</p>\n"
            f"<blockquote>\"{html.escape(question.question_text)}\"</blockquote>\n"
            f'<p><a href="{safe_link}">Record Your Answer</a></p>\n'
            f"<p>Or copy this link: {safe_link}</p>"
        )
        return ComposedMessage(subject=subject, body=text, html=body_html)

    # push
    title = f"Reminder from {asker}" if kind == "reminder" else f"{asker} has a question for you"
    body = custom_message or f'"{quoted}"'
    return ComposedMessage(
        subject=title,
        body=body,
        data={"type": "question_received" if kind == "question" else "question_reminder", "url": link},
    )


def compose_answer_received(
    *,
    channel: str,
    person: PersonContact,
    question: QuestionContext,
    recording_id: str | None,
) -> ComposedMessage:
    subject = f"{person.name} answered your question!"
    if channel == "email":
        text = f'Hi {question.asker_name}! {person.name} answered your question: "{question.question_text}". Open the app to listen.'
        body_html = (
            f"<h1>Hi {html.escape(question.asker_name)}!</h1>\n"
            f"<p>{html.escape(person.name)} just recorded an answer to:</p>\n"
            f"<blockquote>\"{html.escape(question.question_text)}\"</blockquote>"
        )
        return ComposedMessage(subject=subject, body=text, html=body_html)

    data = {"type": "recording_received"}
    if recording_id:
        data["recordingId"] = recording_id
    return ComposedMessage(subject=subject, body=f'"{excerpt(question.question_text)}"', data=data)
