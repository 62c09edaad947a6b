"""Domain models used by the CareConnect sponsorship workflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from .exceptions import InvalidStateError, ValidationError
from .validation import optional_text, require_text, utcnow

DEFAULT_REJECTION_NOTE = "No reason provided."


class SubmissionStatus(str, Enum):
    """Lifecycle shared by funding submissions, activities and payment proofs."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    """Roles supplied by the identity provider."""

    ADMIN = "admin"
    SCHOOL = "school"
    SPONSOR = "sponsor"
    STUART = "stuart"


class FundingStatus(str, Enum):
    NOT_FUNDED = "not_funded"
    FUNDED = "funded"


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4()}"


def parse_gender(value: object, field_name: str = "gender") -> Optional[Gender]:
    """Accept ``Male``/``Female`` in any case; blank values mean no gender."""

    if isinstance(value, Gender):
        return value
    text = optional_text(value, field_name)
    if text is None:
        return None
    for gender in Gender:
        if gender.value.lower() == text.lower():
            return gender
    raise ValidationError(f"{field_name} must be 'Male' or 'Female'.")


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


def _require_pending(status: SubmissionStatus, label: str, record_id: str) -> None:
    if status is not SubmissionStatus.PENDING:
        raise InvalidStateError(
            f"{label} '{record_id}' is already {status.value}; only pending records can be reviewed."
        )


@dataclass(slots=True)
class ChildrenCriteria:
    """Sponsor preferences used by reviewers when matching a child."""

    name: Optional[str] = None
    age: Optional[int] = None
    grade: Optional[str] = None
    school: Optional[str] = None
    gender: Optional[Gender] = None

    FIELDS = ("name", "age", "grade", "school", "gender")

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "ChildrenCriteria":
        """Build criteria from sponsor input, rejecting malformed payloads."""

        if raw is None:
            return cls()
        if isinstance(raw, ChildrenCriteria):
            return raw
        if not isinstance(raw, Mapping):
            raise ValidationError("criteria must be a mapping.")
        unknown = sorted(set(raw) - set(cls.FIELDS))
        if unknown:
            raise ValidationError(f"Unknown criteria field(s): {', '.join(map(str, unknown))}.")
        age = raw.get("age")
        if isinstance(age, str):
            age = age.strip()
            if not age:
                age = None
            elif age.isdigit():
                age = int(age)
            else:
                raise ValidationError("criteria.age must be a positive number.")
        if age is not None and (isinstance(age, bool) or not isinstance(age, int) or age <= 0):
            raise ValidationError("criteria.age must be a positive number.")
        return cls(
            name=optional_text(raw.get("name"), "criteria.name"),
            age=age,
            grade=optional_text(raw.get("grade"), "criteria.grade"),
            school=optional_text(raw.get("school"), "criteria.school"),
            gender=parse_gender(raw.get("gender"), "criteria.gender"),
        )

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "age": self.age,
            "grade": self.grade,
            "school": self.school,
            "gender": self.gender.value if self.gender else None,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class ItemDonation:
    """A single item a sponsor pledges to bring to an activity."""

    name: str
    quantity: int

    def __post_init__(self) -> None:
        self.name = require_text(self.name, "Item name")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValidationError("Item quantity must be a whole number.")
        if self.quantity <= 0:
            raise ValidationError("Item quantity must be at least 1.")

    @classmethod
    def coerce(cls, raw: "ItemDonation | Mapping[str, Any]") -> "ItemDonation":
        if isinstance(raw, ItemDonation):
            return cls(raw.name, raw.quantity)
        if not isinstance(raw, Mapping):
            raise ValidationError("Item donations must be mappings with a name and quantity.")
        return cls(name=raw.get("name"), quantity=raw.get("quantity"))  # type: ignore[arg-type]

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity}


@dataclass(slots=True)
class Child:
    """A child whose sponsorship is managed by the charity."""

    id: str
    name: str
    school_id: str
    grade: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[Gender] = None
    funding_status: FundingStatus = FundingStatus.NOT_FUNDED
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_funded(self) -> bool:
        return self.funding_status is FundingStatus.FUNDED

    def mark_funded(self) -> None:
        self.funding_status = FundingStatus.FUNDED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "school_id": self.school_id,
            "grade": self.grade,
            "age": self.age,
            "gender": self.gender.value if self.gender else None,
            "funding_status": self.funding_status.value,
            "created_at": _iso(self.created_at),
        }


@dataclass(slots=True)
class FundingSubmission:
    """A sponsor's request to fund a child matching ``criteria`` for ``period`` years."""

    id: str
    sponsor_id: str
    period: int
    criteria: ChildrenCriteria = field(default_factory=ChildrenCriteria)
    notes: Optional[str] = None
    status: SubmissionStatus = SubmissionStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    matched_child_id: Optional[str] = None
    payment_link: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """True while the submission holds an approved sponsorship."""

        return self.status is SubmissionStatus.APPROVED

    def require_pending(self) -> None:
        _require_pending(self.status, "Funding submission", self.id)

    def approve(
        self,
        approver: str,
        *,
        child_id: str,
        payment_link: str,
        start_date: datetime,
        end_date: datetime,
        when: datetime | None = None,
    ) -> None:
        self.require_pending()
        moment = when or utcnow()
        self.status = SubmissionStatus.APPROVED
        self.matched_child_id = child_id
        self.payment_link = payment_link
        self.approved_by = approver
        self.approved_at = moment
        self.start_date = start_date
        self.end_date = end_date
        self.rejection_reason = None
        self.resolved_by = approver
        self.resolved_at = moment

    def reject(self, reviewer: str, reason: str, *, when: datetime | None = None) -> None:
        self.require_pending()
        reason = require_text(reason, "rejection_reason")
        self.status = SubmissionStatus.REJECTED
        self.rejection_reason = reason
        self.matched_child_id = None
        self.payment_link = None
        self.approved_by = None
        self.approved_at = None
        self.start_date = None
        self.end_date = None
        self.resolved_by = reviewer
        self.resolved_at = when or utcnow()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sponsor_id": self.sponsor_id,
            "status": self.status.value,
            "requested_at": _iso(self.requested_at),
            "period": self.period,
            "criteria": self.criteria.as_dict(),
            "notes": self.notes,
            "matched_child_id": self.matched_child_id,
            "payment_link": self.payment_link,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "rejection_reason": self.rejection_reason,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
        }


@dataclass(slots=True)
class ActivitySubmission:
    """An event a sponsor proposes to hold with a sponsored child."""

    id: str
    sponsor_id: str
    child_id: str
    school_id: str
    title: str
    detail: str
    location: str
    event_start: datetime
    event_end: datetime
    item_donations: List[ItemDonation] = field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    rejection_note: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    def require_pending(self) -> None:
        _require_pending(self.status, "Activity", self.id)

    def approve(self, reviewer: str, *, when: datetime | None = None) -> None:
        self.require_pending()
        self.status = SubmissionStatus.APPROVED
        self.rejection_note = None
        self.resolved_by = reviewer
        self.resolved_at = when or utcnow()

    def reject(
        self,
        reviewer: str,
        note: str | None = None,
        *,
        default_note: str = DEFAULT_REJECTION_NOTE,
        when: datetime | None = None,
    ) -> None:
        self.require_pending()
        self.status = SubmissionStatus.REJECTED
        self.rejection_note = (note or "").strip() or default_note
        self.resolved_by = reviewer
        self.resolved_at = when or utcnow()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sponsor_id": self.sponsor_id,
            "child_id": self.child_id,
            "school_id": self.school_id,
            "title": self.title,
            "detail": self.detail,
            "location": self.location,
            "status": self.status.value,
            "event_start": _iso(self.event_start),
            "event_end": _iso(self.event_end),
            "item_donations": [item.as_dict() for item in self.item_donations],
            "requested_at": _iso(self.requested_at),
            "rejection_note": self.rejection_note,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
        }


@dataclass(slots=True)
class PaymentProof:
    """Evidence of payment uploaded against an approved funding submission."""

    id: str
    submission_id: str
    image_path: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    uploaded_at: datetime = field(default_factory=utcnow)
    rejection_reason: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    def require_pending(self) -> None:
        _require_pending(self.status, "Payment proof", self.id)

    def approve(self, reviewer: str, *, when: datetime | None = None) -> None:
        self.require_pending()
        self.status = SubmissionStatus.APPROVED
        self.resolved_by = reviewer
        self.resolved_at = when or utcnow()

    def reject(self, reviewer: str, reason: str | None = None, *, when: datetime | None = None) -> None:
        self.require_pending()
        self.status = SubmissionStatus.REJECTED
        self.rejection_reason = (reason or "").strip() or None
        self.resolved_by = reviewer
        self.resolved_at = when or utcnow()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "submission_id": self.submission_id,
            "image_path": self.image_path,
            "status": self.status.value,
            "uploaded_at": _iso(self.uploaded_at),
            "rejection_reason": self.rejection_reason,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
        }


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable review or intake action."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


RECORD_TYPES: Sequence[type] = (Child, FundingSubmission, ActivitySubmission, PaymentProof)


__all__ = [
    "DEFAULT_REJECTION_NOTE",
    "RECORD_TYPES",
    "ActivitySubmission",
    "AuditEvent",
    "Child",
    "ChildrenCriteria",
    "FundingStatus",
    "FundingSubmission",
    "Gender",
    "ItemDonation",
    "PaymentProof",
    "Role",
    "SubmissionStatus",
    "new_id",
    "parse_gender",
]
