from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol


@dataclass(frozen=True)
class PersonContact:
    person_id: str
    name: str
    phone_number: str | None = None
    email: str | None = None
    push_tokens: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class QuestionContext:
    question_id: str
    question_text: str
    journal_title: str
    asker_name: str
    asker_email: str | None = None
    asker_push_tokens: tuple[str, ...] = field(default_factory=tuple)


class ContactDirectory(Protocol):
    """Read-only view of the people and questions owned by the surrounding CRUD layer."""

    def get_person(self, person_id: str) -> PersonContact | None: ...

    def get_question(self, question_id: str) -> QuestionContext | None: ...


class InMemoryContactDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._people: dict[str, PersonContact] = {}
        self._questions: dict[str, QuestionContext] = {}

    def reset(self) -> None:
        with self._lock:
            self._people.clear()
            self._questions.clear()

    def upsert_person(self, person: PersonContact) -> None:
        with self._lock:
            self._people[person.person_id] = person

    def upsert_question(self, question: QuestionContext) -> None:
        with self._lock:
            self._questions[question.question_id] = question

    def get_person(self, person_id: str) -> PersonContact | None:
        with self._lock:
            return self._people.get(person_id)

    def get_question(self, question_id: str) -> QuestionContext | None:
        with self._lock:
            return self._questions.get(question_id)
