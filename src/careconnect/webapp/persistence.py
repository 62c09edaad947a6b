"""Persistence and SQLModel definitions for the CareConnect web service."""
from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import DateTime, Index, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..exceptions import DuplicateRecordError, NotFoundError, PreconditionError, ValidationError
from ..models import (
    ActivitySubmission,
    Child,
    ChildrenCriteria,
    FundingStatus,
    FundingSubmission,
    Gender,
    ItemDonation,
    PaymentProof,
    SubmissionStatus,
)
from ..store import RecordStore
from ..validation import to_timestamp

R = TypeVar("R")

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
ACTIVE_CHILD_INDEX = "ux_funding_active_child"


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to the naive timestamps carried by domain records."""

    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _naive(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands values back without an offset; other backends keep it.
    return to_timestamp(moment) if moment is not None else None


def _aware_now() -> datetime:
    return datetime.now(timezone.utc)


class ChildRow(SQLModel, table=True):
    __tablename__ = "children"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    name: str
    school_id: str = Field(index=True)
    grade: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    funding_status: str = FundingStatus.NOT_FUNDED.value  # not_funded|funded
    created_at: datetime = Field(default_factory=_aware_now, sa_type=DateTime(timezone=True))


class FundingSubmissionRow(SQLModel, table=True):
    __tablename__ = "funding_submissions"  # type: ignore[assignment]
    # at most one approved submission per matched child
    __table_args__ = (
        Index(
            ACTIVE_CHILD_INDEX,
            "matched_child_id",
            unique=True,
            sqlite_where=text("status = 'approved'"),
            postgresql_where=text("status = 'approved'"),
        ),
    )

    id: str = Field(primary_key=True)
    sponsor_id: str = Field(index=True)
    status: str = Field(default=SubmissionStatus.PENDING.value, index=True)  # pending|approved|rejected
    requested_at: datetime = Field(default_factory=_aware_now, sa_type=DateTime(timezone=True))
    period: int
    criteria: str = "{}"
    notes: Optional[str] = None
    matched_child_id: Optional[str] = None
    payment_link: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    start_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    end_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    rejection_reason: Optional[str] = None
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    resolved_by: Optional[str] = None


class ActivityRow(SQLModel, table=True):
    __tablename__ = "activities"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    sponsor_id: str = Field(index=True)
    child_id: str
    school_id: str = Field(index=True)
    title: str
    detail: str
    location: str
    status: str = Field(default=SubmissionStatus.PENDING.value, index=True)
    event_start: datetime = Field(sa_type=DateTime(timezone=True))
    event_end: datetime = Field(sa_type=DateTime(timezone=True))
    item_donations: str = "[]"
    requested_at: datetime = Field(default_factory=_aware_now, sa_type=DateTime(timezone=True))
    rejection_note: Optional[str] = None
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    resolved_by: Optional[str] = None


class PaymentProofRow(SQLModel, table=True):
    __tablename__ = "payment_proofs"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    submission_id: str = Field(unique=True)
    image_path: str
    status: str = Field(default=SubmissionStatus.PENDING.value, index=True)
    uploaded_at: datetime = Field(default_factory=_aware_now, sa_type=DateTime(timezone=True))
    rejection_reason: Optional[str] = None
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    resolved_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Row <-> record conversion
# ---------------------------------------------------------------------------
def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _child_values(child: Child) -> Dict[str, Any]:
    return {
        "id": child.id,
        "name": child.name,
        "school_id": child.school_id,
        "grade": child.grade,
        "age": child.age,
        "gender": _plain(child.gender),
        "funding_status": child.funding_status.value,
        "created_at": _aware(child.created_at),
    }


def _child_record(row: ChildRow) -> Child:
    return Child(
        id=row.id,
        name=row.name,
        school_id=row.school_id,
        grade=row.grade,
        age=row.age,
        gender=Gender(row.gender) if row.gender else None,
        funding_status=FundingStatus(row.funding_status),
        created_at=_naive(row.created_at),
    )


def _funding_values(submission: FundingSubmission) -> Dict[str, Any]:
    return {
        "id": submission.id,
        "sponsor_id": submission.sponsor_id,
        "status": submission.status.value,
        "requested_at": _aware(submission.requested_at),
        "period": submission.period,
        "criteria": json.dumps(submission.criteria.as_dict(), sort_keys=True),
        "notes": submission.notes,
        "matched_child_id": submission.matched_child_id,
        "payment_link": submission.payment_link,
        "approved_by": submission.approved_by,
        "approved_at": _aware(submission.approved_at),
        "start_date": _aware(submission.start_date),
        "end_date": _aware(submission.end_date),
        "rejection_reason": submission.rejection_reason,
        "resolved_at": _aware(submission.resolved_at),
        "resolved_by": submission.resolved_by,
    }


def _funding_record(row: FundingSubmissionRow) -> FundingSubmission:
    return FundingSubmission(
        id=row.id,
        sponsor_id=row.sponsor_id,
        period=row.period,
        criteria=ChildrenCriteria.from_mapping(json.loads(row.criteria or "{}")),
        notes=row.notes,
        status=SubmissionStatus(row.status),
        requested_at=_naive(row.requested_at),
        matched_child_id=row.matched_child_id,
        payment_link=row.payment_link,
        approved_by=row.approved_by,
        approved_at=_naive(row.approved_at),
        start_date=_naive(row.start_date),
        end_date=_naive(row.end_date),
        rejection_reason=row.rejection_reason,
        resolved_at=_naive(row.resolved_at),
        resolved_by=row.resolved_by,
    )


def _activity_values(activity: ActivitySubmission) -> Dict[str, Any]:
    return {
        "id": activity.id,
        "sponsor_id": activity.sponsor_id,
        "child_id": activity.child_id,
        "school_id": activity.school_id,
        "title": activity.title,
        "detail": activity.detail,
        "location": activity.location,
        "status": activity.status.value,
        "event_start": _aware(activity.event_start),
        "event_end": _aware(activity.event_end),
        "item_donations": json.dumps([item.as_dict() for item in activity.item_donations]),
        "requested_at": _aware(activity.requested_at),
        "rejection_note": activity.rejection_note,
        "resolved_at": _aware(activity.resolved_at),
        "resolved_by": activity.resolved_by,
    }


def _activity_record(row: ActivityRow) -> ActivitySubmission:
    return ActivitySubmission(
        id=row.id,
        sponsor_id=row.sponsor_id,
        child_id=row.child_id,
        school_id=row.school_id,
        title=row.title,
        detail=row.detail,
        location=row.location,
        event_start=_naive(row.event_start),
        event_end=_naive(row.event_end),
        item_donations=[ItemDonation.coerce(item) for item in json.loads(row.item_donations or "[]")],
        status=SubmissionStatus(row.status),
        requested_at=_naive(row.requested_at),
        rejection_note=row.rejection_note,
        resolved_at=_naive(row.resolved_at),
        resolved_by=row.resolved_by,
    )


def _proof_values(proof: PaymentProof) -> Dict[str, Any]:
    return {
        "id": proof.id,
        "submission_id": proof.submission_id,
        "image_path": proof.image_path,
        "status": proof.status.value,
        "uploaded_at": _aware(proof.uploaded_at),
        "rejection_reason": proof.rejection_reason,
        "resolved_at": _aware(proof.resolved_at),
        "resolved_by": proof.resolved_by,
    }


def _proof_record(row: PaymentProofRow) -> PaymentProof:
    return PaymentProof(
        id=row.id,
        submission_id=row.submission_id,
        image_path=row.image_path,
        status=SubmissionStatus(row.status),
        uploaded_at=_naive(row.uploaded_at),
        rejection_reason=row.rejection_reason,
        resolved_at=_naive(row.resolved_at),
        resolved_by=row.resolved_by,
    )


_MAPPINGS: Dict[type, Tuple[Type[SQLModel], Callable[[Any], Dict[str, Any]], Callable[[Any], Any]]] = {
    Child: (ChildRow, _child_values, _child_record),
    FundingSubmission: (FundingSubmissionRow, _funding_values, _funding_record),
    ActivitySubmission: (ActivityRow, _activity_values, _activity_record),
    PaymentProof: (PaymentProofRow, _proof_values, _proof_record),
}


# ---------------------------------------------------------------------------
# Engine & store
# ---------------------------------------------------------------------------
def build_engine(sqlite_file: str) -> Engine:
    return create_engine(
        f"sqlite:///{sqlite_file}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def _translate_integrity_error(exc: IntegrityError) -> Exception:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    if "matched_child_id" in message or ACTIVE_CHILD_INDEX in message:
        return ValidationError("Child already matched to an approved sponsorship.")
    if "payment_proofs.submission_id" in message:
        return PreconditionError("A payment proof already exists for this submission.")
    return DuplicateRecordError("Record already exists.")


class SqlRecordStore(RecordStore):
    """Record store backed by SQLModel sessions.

    Every :meth:`atomic` block owns one session that is committed when the block
    exits cleanly and rolled back otherwise. Blocks are serialised within the
    process by a re-entrant lock; across processes the partial unique index on
    approved submissions rejects a second active match for the same child.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.RLock()
        self._local = threading.local()
        create_db_and_tables(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def _mapping(self, kind: type) -> Tuple[Type[SQLModel], Callable[[Any], Dict[str, Any]], Callable[[Any], Any]]:
        try:
            return _MAPPINGS[kind]
        except KeyError as exc:
            raise TypeError(f"Unsupported record type: {kind!r}") from exc

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            if getattr(self._local, "session", None) is not None:
                yield
                return
            with Session(self._engine) as session:
                self._local.session = session
                try:
                    yield
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise _translate_integrity_error(exc) from exc
                except BaseException:
                    session.rollback()
                    raise
                finally:
                    self._local.session = None

    def _session(self) -> Session:
        return self._local.session

    def create(self, record: R) -> R:
        row_type, to_values, _ = self._mapping(type(record))
        with self.atomic():
            session = self._session()
            values = to_values(record)
            if session.get(row_type, values["id"]) is not None:
                raise DuplicateRecordError(f"{type(record).__name__} '{values['id']}' already exists.")
            session.add(row_type(**values))
            session.flush()
        return record

    def get(self, kind: Type[R], record_id: str) -> R:
        row_type, _, to_record = self._mapping(kind)
        with self.atomic():
            row = self._session().get(row_type, record_id)
            if row is None:
                raise NotFoundError(f"{kind.__name__} '{record_id}' does not exist.")
            return to_record(row)

    def update(self, record: R) -> R:
        row_type, to_values, _ = self._mapping(type(record))
        with self.atomic():
            session = self._session()
            values = to_values(record)
            row = session.get(row_type, values["id"])
            if row is None:
                raise NotFoundError(f"{type(record).__name__} '{values['id']}' does not exist.")
            for key, value in values.items():
                setattr(row, key, value)
            session.add(row)
            session.flush()
        return record

    def filter(self, kind: Type[R], **criteria: Any) -> List[R]:
        row_type, _, to_record = self._mapping(kind)
        query = select(row_type)
        for key, value in criteria.items():
            query = query.where(getattr(row_type, key) == _plain(value))
        with self.atomic():
            return [to_record(row) for row in self._session().exec(query).all()]


__all__ = [
    "ACTIVE_CHILD_INDEX",
    "ActivityRow",
    "ChildRow",
    "FundingSubmissionRow",
    "PaymentProofRow",
    "SqlRecordStore",
    "build_engine",
    "create_db_and_tables",
]
