from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, create_engine, delete, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import ConcurrentUpdateError
from .lifecycle import AssignmentRecord


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AssignmentRepository(Protocol):
    def reset(self) -> None: ...

    def add(self, record: AssignmentRecord) -> AssignmentRecord: ...

    def get(self, assignment_id: str) -> AssignmentRecord | None: ...

    def get_by_link_token(self, link_token: str) -> AssignmentRecord | None: ...

    def save(self, record: AssignmentRecord, *, expected_version: int) -> AssignmentRecord: ...

    def delete(self, assignment_id: str, *, expected_version: int) -> None: ...


class InMemoryAssignmentRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, AssignmentRecord] = {}
        self._token_index: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._token_index.clear()

    def add(self, record: AssignmentRecord) -> AssignmentRecord:
        with self._lock:
            if record.assignment_id in self._records:
                raise ValueError(f"assignment already exists: {record.assignment_id}")
            if record.unique_link_token in self._token_index:
                raise ValueError("link token already in use")
            stored = record.copy()
            self._records[stored.assignment_id] = stored
            self._token_index[stored.unique_link_token] = stored.assignment_id
            return stored.copy()

    def get(self, assignment_id: str) -> AssignmentRecord | None:
        with self._lock:
            record = self._records.get(assignment_id)
            return record.copy() if record is not None else None

    def get_by_link_token(self, link_token: str) -> AssignmentRecord | None:
        with self._lock:
            assignment_id = self._token_index.get(link_token)
            if assignment_id is None:
                return None
            return self._records[assignment_id].copy()

    def save(self, record: AssignmentRecord, *, expected_version: int) -> AssignmentRecord:
        with self._lock:
            current = self._records.get(record.assignment_id)
            if current is None or current.version != expected_version:
                raise ConcurrentUpdateError(record.assignment_id, expected_version)
            stored = replace(record, version=expected_version + 1)
            self._records[stored.assignment_id] = stored
            return stored.copy()

    def delete(self, assignment_id: str, *, expected_version: int) -> None:
        with self._lock:
            current = self._records.get(assignment_id)
            if current is None or current.version != expected_version:
                raise ConcurrentUpdateError(assignment_id, expected_version)
            del self._records[assignment_id]
            self._token_index.pop(current.unique_link_token, None)


class AssignmentsBase(DeclarativeBase):
    pass


class _AssignmentRow(AssignmentsBase):
    __tablename__ = "question_assignments"

    assignment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    person_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    unique_link_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recording_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _AssignmentRow) -> AssignmentRecord:
    return AssignmentRecord(
        assignment_id=row.assignment_id,
        question_id=row.question_id,
        person_id=row.person_id,
        unique_link_token=row.unique_link_token,
        status=row.status,
        created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        sent_at=_coerce_utc(row.sent_at),
        viewed_at=_coerce_utc(row.viewed_at),
        answered_at=_coerce_utc(row.answered_at),
        reminder_count=row.reminder_count,
        last_reminder_at=_coerce_utc(row.last_reminder_at),
        recording_id=row.recording_id,
        version=row.version,
    )


def _mutable_columns(record: AssignmentRecord) -> dict[str, object]:
    return {
        "status": record.status,
        "sent_at": record.sent_at,
        "viewed_at": record.viewed_at,
        "answered_at": record.answered_at,
        "reminder_count": record.reminder_count,
        "last_reminder_at": record.last_reminder_at,
        "recording_id": record.recording_id,
        "updated_at": record.updated_at,
    }


class SqlAlchemyAssignmentRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ASSIGNMENT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AssignmentsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_AssignmentRow))

    def add(self, record: AssignmentRecord) -> AssignmentRecord:
        with self._session() as session:
            with session.begin():
                session.add(
                    _AssignmentRow(
                        assignment_id=record.assignment_id,
                        question_id=record.question_id,
                        person_id=record.person_id,
                        unique_link_token=record.unique_link_token,
                        version=record.version,
                        created_at=record.created_at,
                        **_mutable_columns(record),
                    )
                )
        return record.copy()

    def get(self, assignment_id: str) -> AssignmentRecord | None:
        with self._session() as session:
            row = session.get(_AssignmentRow, assignment_id)
            return _to_record(row) if row is not None else None

    def get_by_link_token(self, link_token: str) -> AssignmentRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_AssignmentRow).where(_AssignmentRow.unique_link_token == link_token)
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def save(self, record: AssignmentRecord, *, expected_version: int) -> AssignmentRecord:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_AssignmentRow)
                    .where(_AssignmentRow.assignment_id == record.assignment_id)
                    .where(_AssignmentRow.version == expected_version)
                    .values(version=expected_version + 1, **_mutable_columns(record))
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(record.assignment_id, expected_version)
        return replace(record, version=expected_version + 1)

    def delete(self, assignment_id: str, *, expected_version: int) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_AssignmentRow)
                    .where(_AssignmentRow.assignment_id == assignment_id)
                    .where(_AssignmentRow.version == expected_version)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(assignment_id, expected_version)


def create_assignment_repository(*, backend: str, database_url: str) -> AssignmentRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAssignmentRepository(database_url)
    if normalized == "inmemory":
        return InMemoryAssignmentRepository()
    raise RuntimeError(f"unsupported ASSIGNMENT_STORE_BACKEND: {backend}")
