"""High level service coordinating the sponsorship approval workflow."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple

from .admin import AuditLog
from .exceptions import AuthorizationError, CareConnectError, PreconditionError, ValidationError
from .files import LocalFileStorage
from .models import (
    DEFAULT_REJECTION_NOTE,
    ActivitySubmission,
    Child,
    ChildrenCriteria,
    FundingStatus,
    FundingSubmission,
    Gender,
    ItemDonation,
    PaymentProof,
    Role,
    SubmissionStatus,
    new_id,
    parse_gender,
)
from .ops import HealthMonitor, StructuredLogger
from .security import (
    ACTIVITY_REVIEWERS,
    ACTIVITY_VIEWERS,
    CHILD_MANAGERS,
    FUNDING_REVIEWERS,
    SPONSORS,
    Caller,
    authorize,
    authorize_owner,
    authorize_school,
)
from .store import InMemoryRecordStore, RecordStore
from .validation import (
    TimestampLike,
    add_years,
    optional_text,
    require_positive_int,
    require_text,
    require_url,
    to_timestamp,
    utcnow,
)

TITLE_MIN_LENGTH = 5
DETAIL_MIN_LENGTH = 10
LOCATION_MIN_LENGTH = 3

_RECORD_KINDS: Dict[str, Tuple[type, FrozenSet[Role]]] = {
    "funding": (FundingSubmission, FUNDING_REVIEWERS),
    "activity": (ActivitySubmission, ACTIVITY_VIEWERS),
    "proof": (PaymentProof, FUNDING_REVIEWERS),
}


class CareConnect:
    """Run funding intake, review and payment confirmation against a record store."""

    __slots__ = (
        "_store",
        "_files",
        "_audit_log",
        "_logger",
        "_health",
        "_clock",
        "_default_rejection_note",
    )

    def __init__(
        self,
        store: RecordStore | None = None,
        *,
        files: LocalFileStorage | None = None,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
        clock: Callable[[], datetime] = utcnow,
        default_rejection_note: str = DEFAULT_REJECTION_NOTE,
    ) -> None:
        self._store = store or InMemoryRecordStore()
        self._files = files
        self._audit_log = audit_log or AuditLog()
        self._logger = logger or StructuredLogger()
        self._health = HealthMonitor(self._store)
        self._clock = clock
        self._default_rejection_note = default_rejection_note

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def health(self) -> dict:
        return self._health.status()

    @contextmanager
    def _refusals(self, event: str, **fields: object) -> Iterator[None]:
        try:
            yield
        except CareConnectError as exc:
            self._logger.log(event, error=type(exc).__name__, message=str(exc), **fields)
            raise

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------
    def register_child(
        self,
        caller: Caller,
        *,
        name: str,
        school_id: str,
        grade: str | None = None,
        age: int | None = None,
        gender: Gender | str | None = None,
    ) -> Child:
        authorize(caller, CHILD_MANAGERS, "register children")
        school = require_text(school_id, "school_id")
        authorize_school(caller, school, "register children")
        child = Child(
            id=new_id("child"),
            name=require_text(name, "name"),
            school_id=school,
            grade=optional_text(grade, "grade"),
            age=require_positive_int(age, "age") if age is not None else None,
            gender=parse_gender(gender),
            created_at=self._clock(),
        )
        with self._store.atomic():
            self._store.create(child)
        self._audit_log.record(caller.user_id, "register_child", child.id)
        self._logger.log("child_registered", child=child.id, school=child.school_id)
        return child

    def get_child(self, child_id: str) -> Child:
        return self._store.get(Child, child_id)

    def available_children(self) -> Sequence[Child]:
        """Children that can still be matched to a sponsor."""

        children = [child for child in self._store.filter(Child) if not child.is_funded]
        return tuple(sorted(children, key=lambda child: child.name))

    def find_children(
        self,
        *,
        school_id: str | None = None,
        grade: str | None = None,
        gender: Gender | str | None = None,
        funding_status: FundingStatus | str | None = None,
    ) -> Sequence[Child]:
        """Search children the way reviewers match them against sponsor criteria.

        Grade is compared case-insensitively; every filter left as ``None`` is
        ignored.
        """

        criteria = _criteria(
            school_id=optional_text(school_id, "school_id"),
            gender=parse_gender(gender),
            funding_status=_funding_status(funding_status),
        )
        wanted_grade = optional_text(grade, "grade")
        children = [
            child
            for child in self._store.filter(Child, **criteria)
            if wanted_grade is None or (child.grade or "").lower() == wanted_grade.lower()
        ]
        return tuple(sorted(children, key=lambda child: child.name))

    def sponsored_children(self, caller: Caller, sponsor_id: str) -> Sequence[Child]:
        """Children matched through the sponsor's approved submissions, without duplicates."""

        authorize_owner(caller, sponsor_id, FUNDING_REVIEWERS, "view sponsored children")
        seen: Dict[str, Child] = {}
        for submission in self._funding(sponsor_id=sponsor_id, status=SubmissionStatus.APPROVED):
            child_id = submission.matched_child_id
            if child_id and child_id not in seen:
                seen[child_id] = self._store.get(Child, child_id)
        return tuple(seen.values())

    # ------------------------------------------------------------------
    # Submission intake
    # ------------------------------------------------------------------
    def submit_funding(
        self,
        caller: Caller,
        *,
        period: int,
        criteria: Mapping[str, Any] | ChildrenCriteria | None = None,
        notes: str | None = None,
    ) -> FundingSubmission:
        authorize(caller, SPONSORS, "submit funding requests")
        submission = FundingSubmission(
            id=new_id("fs"),
            sponsor_id=caller.user_id,
            period=require_positive_int(period, "period"),
            criteria=ChildrenCriteria.from_mapping(criteria),
            notes=optional_text(notes, "notes"),
            requested_at=self._clock(),
        )
        with self._store.atomic():
            self._store.create(submission)
        self._audit_log.record(caller.user_id, "submit_funding", submission.id, details={"period": submission.period})
        self._logger.log("funding_submitted", submission=submission.id, sponsor=caller.user_id, period=submission.period)
        return submission

    def submit_activity(
        self,
        caller: Caller,
        *,
        child_id: str,
        school_id: str,
        title: str,
        detail: str,
        location: str,
        event_start: TimestampLike,
        event_end: TimestampLike,
        item_donations: Sequence[ItemDonation | Mapping[str, Any]] = (),
    ) -> ActivitySubmission:
        authorize(caller, SPONSORS, "propose activities")
        start = to_timestamp(event_start, field_name="event_start")
        end = to_timestamp(event_end, field_name="event_end")
        if end <= start:
            raise ValidationError("event_end must be after event_start.")
        activity = ActivitySubmission(
            id=new_id("act"),
            sponsor_id=caller.user_id,
            child_id=require_text(child_id, "child_id"),
            school_id=require_text(school_id, "school_id"),
            title=require_text(title, "title", min_length=TITLE_MIN_LENGTH),
            detail=require_text(detail, "detail", min_length=DETAIL_MIN_LENGTH),
            location=require_text(location, "location", min_length=LOCATION_MIN_LENGTH),
            event_start=start,
            event_end=end,
            item_donations=[ItemDonation.coerce(item) for item in item_donations or ()],
            requested_at=self._clock(),
        )
        with self._store.atomic():
            self._store.create(activity)
        self._audit_log.record(caller.user_id, "submit_activity", activity.id, details={"child": activity.child_id})
        self._logger.log("activity_submitted", activity=activity.id, sponsor=caller.user_id, school=activity.school_id)
        return activity

    # ------------------------------------------------------------------
    # Review authority: funding
    # ------------------------------------------------------------------
    def _ensure_child_available(self, child: Child) -> None:
        active = self._store.filter(
            FundingSubmission, matched_child_id=child.id, status=SubmissionStatus.APPROVED
        )
        if active or child.is_funded:
            raise ValidationError(f"Child '{child.id}' is already matched to an approved sponsorship.")

    def _sponsorship_window(
        self,
        period: int,
        start_date: TimestampLike | None,
        end_date: TimestampLike | None,
        now: datetime,
    ) -> tuple[datetime, datetime]:
        start = to_timestamp(start_date, field_name="start_date") if start_date is not None else now
        if end_date is None:
            return start, add_years(start, period)
        end = to_timestamp(end_date, field_name="end_date")
        if end <= start:
            raise ValidationError("end_date must be after start_date.")
        return start, end

    def approve_funding(
        self,
        caller: Caller,
        submission_id: str,
        *,
        matched_child_id: str,
        payment_link: str,
        start_date: TimestampLike | None = None,
        end_date: TimestampLike | None = None,
    ) -> FundingSubmission:
        """Approve a pending submission and mark the matched child as funded.

        Both writes happen inside one store transaction: either the submission is
        approved and the child funded, or neither change is kept.
        """

        authorize(caller, FUNDING_REVIEWERS, "approve funding submissions")
        with self._refusals("funding_approval_refused", submission=submission_id):
            child_id = require_text(matched_child_id, "matched_child_id")
            link = require_url(payment_link)
            with self._store.atomic():
                submission = self._store.get(FundingSubmission, submission_id)
                submission.require_pending()
                child = self._store.get(Child, child_id)
                self._ensure_child_available(child)
                now = self._clock()
                start, end = self._sponsorship_window(submission.period, start_date, end_date, now)
                submission.approve(
                    caller.user_id,
                    child_id=child.id,
                    payment_link=link,
                    start_date=start,
                    end_date=end,
                    when=now,
                )
                child.mark_funded()
                self._store.update(submission)
                self._store.update(child)
        self._audit_log.record(
            caller.user_id,
            "approve_funding",
            submission.id,
            details={"child": child.id, "payment_link": link},
        )
        self._logger.log("funding_approved", submission=submission.id, child=child.id, approver=caller.user_id)
        return submission

    def reject_funding(self, caller: Caller, submission_id: str, rejection_reason: str | None) -> FundingSubmission:
        authorize(caller, FUNDING_REVIEWERS, "reject funding submissions")
        with self._refusals("funding_rejection_refused", submission=submission_id):
            if rejection_reason is None:
                raise ValidationError("rejection_reason is required to reject a funding submission.")
            reason = require_text(rejection_reason, "rejection_reason")
            with self._store.atomic():
                submission = self._store.get(FundingSubmission, submission_id)
                submission.reject(caller.user_id, reason, when=self._clock())
                self._store.update(submission)
        self._audit_log.record(caller.user_id, "reject_funding", submission.id, details={"reason": reason})
        self._logger.log("funding_rejected", submission=submission.id, reviewer=caller.user_id)
        return submission

    def match_sponsor(
        self,
        caller: Caller,
        *,
        sponsor_id: str,
        child_id: str,
        payment_link: str,
        period: int,
        start_date: TimestampLike | None = None,
        notes: str | None = None,
    ) -> FundingSubmission:
        """Create an approved sponsorship directly, without a sponsor request."""

        authorize(caller, FUNDING_REVIEWERS, "match sponsors to children")
        with self._refusals("sponsor_match_refused", sponsor=sponsor_id, child=child_id):
            sponsor = require_text(sponsor_id, "sponsor_id")
            years = require_positive_int(period, "period")
            link = require_url(payment_link)
            with self._store.atomic():
                child = self._store.get(Child, require_text(child_id, "child_id"))
                self._ensure_child_available(child)
                now = self._clock()
                start, end = self._sponsorship_window(years, start_date, None, now)
                submission = FundingSubmission(
                    id=new_id("fs"),
                    sponsor_id=sponsor,
                    period=years,
                    notes=optional_text(notes, "notes"),
                    requested_at=now,
                )
                submission.approve(
                    caller.user_id,
                    child_id=child.id,
                    payment_link=link,
                    start_date=start,
                    end_date=end,
                    when=now,
                )
                child.mark_funded()
                self._store.create(submission)
                self._store.update(child)
        self._audit_log.record(caller.user_id, "match_sponsor", submission.id, details={"child": child.id})
        self._logger.log("sponsor_matched", submission=submission.id, sponsor=sponsor, child=child.id)
        return submission

    # ------------------------------------------------------------------
    # Review authority: activities
    # ------------------------------------------------------------------
    def approve_activity(self, caller: Caller, activity_id: str) -> ActivitySubmission:
        authorize(caller, ACTIVITY_REVIEWERS, "approve activities")
        with self._refusals("activity_approval_refused", activity=activity_id):
            with self._store.atomic():
                activity = self._store.get(ActivitySubmission, activity_id)
                authorize_school(caller, activity.school_id, "approve activities")
                activity.approve(caller.user_id, when=self._clock())
                self._store.update(activity)
        self._audit_log.record(caller.user_id, "approve_activity", activity.id)
        self._logger.log("activity_approved", activity=activity.id, reviewer=caller.user_id)
        return activity

    def reject_activity(
        self,
        caller: Caller,
        activity_id: str,
        rejection_note: str | None = None,
    ) -> ActivitySubmission:
        authorize(caller, ACTIVITY_REVIEWERS, "reject activities")
        with self._refusals("activity_rejection_refused", activity=activity_id):
            with self._store.atomic():
                activity = self._store.get(ActivitySubmission, activity_id)
                authorize_school(caller, activity.school_id, "reject activities")
                activity.reject(
                    caller.user_id,
                    rejection_note,
                    default_note=self._default_rejection_note,
                    when=self._clock(),
                )
                self._store.update(activity)
        self._audit_log.record(
            caller.user_id, "reject_activity", activity.id, details={"note": activity.rejection_note}
        )
        self._logger.log("activity_rejected", activity=activity.id, reviewer=caller.user_id)
        return activity

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------
    def upload_proof(self, caller: Caller, submission_id: str, image_path: str) -> PaymentProof:
        authorize(caller, SPONSORS, "upload payment proofs")
        path = require_text(image_path, "image_path")
        with self._refusals("proof_upload_refused", submission=submission_id):
            with self._store.atomic():
                submission = self._store.get(FundingSubmission, submission_id)
                if submission.sponsor_id != caller.user_id:
                    raise AuthorizationError("Only the submitting sponsor may upload payment proof.")
                if submission.status is not SubmissionStatus.APPROVED:
                    raise PreconditionError(
                        f"Payment proof can only be uploaded for approved submissions; "
                        f"'{submission.id}' is {submission.status.value}."
                    )
                if self._store.filter(PaymentProof, submission_id=submission.id):
                    raise PreconditionError(f"A payment proof already exists for '{submission.id}'.")
                proof = PaymentProof(
                    id=new_id("pp"),
                    submission_id=submission.id,
                    image_path=path,
                    uploaded_at=self._clock(),
                )
                self._store.create(proof)
        self._audit_log.record(caller.user_id, "upload_proof", proof.id, details={"submission": submission.id})
        self._logger.log("proof_uploaded", proof=proof.id, submission=submission.id)
        return proof

    def upload_proof_file(self, caller: Caller, submission_id: str, filename: str, data: bytes) -> PaymentProof:
        """Store ``data`` through the file storage, then attach it as proof."""

        authorize(caller, SPONSORS, "upload payment proofs")
        if self._files is None:
            raise PreconditionError("No file storage is configured for payment proofs.")
        path = self._files.save(filename, data)
        try:
            return self.upload_proof(caller, submission_id, path)
        except CareConnectError:
            self._files.delete(path)
            raise

    def approve_proof(self, caller: Caller, proof_id: str) -> PaymentProof:
        authorize(caller, FUNDING_REVIEWERS, "approve payment proofs")
        with self._refusals("proof_approval_refused", proof=proof_id):
            with self._store.atomic():
                proof = self._store.get(PaymentProof, proof_id)
                proof.approve(caller.user_id, when=self._clock())
                self._store.update(proof)
        self._audit_log.record(caller.user_id, "approve_proof", proof.id)
        self._logger.log("proof_approved", proof=proof.id, submission=proof.submission_id)
        return proof

    def reject_proof(self, caller: Caller, proof_id: str, reason: str | None = None) -> PaymentProof:
        authorize(caller, FUNDING_REVIEWERS, "reject payment proofs")
        with self._refusals("proof_rejection_refused", proof=proof_id):
            with self._store.atomic():
                proof = self._store.get(PaymentProof, proof_id)
                proof.reject(caller.user_id, reason, when=self._clock())
                self._store.update(proof)
        self._audit_log.record(caller.user_id, "reject_proof", proof.id, details={"reason": proof.rejection_reason})
        self._logger.log("proof_rejected", proof=proof.id, submission=proof.submission_id)
        return proof

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _funding(self, **filters: Any) -> Sequence[FundingSubmission]:
        records = self._store.filter(FundingSubmission, **_criteria(**filters))
        return tuple(sorted(records, key=lambda item: item.requested_at, reverse=True))

    def get_funding(self, caller: Caller, submission_id: str) -> FundingSubmission:
        submission = self._store.get(FundingSubmission, submission_id)
        authorize_owner(caller, submission.sponsor_id, FUNDING_REVIEWERS, "view funding submissions")
        return submission

    def get_activity(self, caller: Caller, activity_id: str) -> ActivitySubmission:
        activity = self._store.get(ActivitySubmission, activity_id)
        authorize_owner(caller, activity.sponsor_id, ACTIVITY_VIEWERS, "view activities")
        authorize_school(caller, activity.school_id, "view activities")
        return activity

    def get_proof(self, caller: Caller, proof_id: str) -> PaymentProof:
        proof = self._store.get(PaymentProof, proof_id)
        submission = self._store.get(FundingSubmission, proof.submission_id)
        authorize_owner(caller, submission.sponsor_id, FUNDING_REVIEWERS, "view payment proofs")
        return proof

    def funding_submissions(
        self,
        caller: Caller,
        *,
        sponsor_id: str | None = None,
        status: SubmissionStatus | str | None = None,
    ) -> Sequence[FundingSubmission]:
        """Newest first. Sponsors must ask for their own submissions by id."""

        authorize_owner(caller, sponsor_id, FUNDING_REVIEWERS, "list funding submissions")
        return self._funding(sponsor_id=sponsor_id, status=_status(status))

    def activities(
        self,
        caller: Caller,
        *,
        sponsor_id: str | None = None,
        school_id: str | None = None,
        status: SubmissionStatus | str | None = None,
    ) -> Sequence[ActivitySubmission]:
        authorize_owner(caller, sponsor_id, ACTIVITY_VIEWERS, "list activities")
        if caller.role is Role.SCHOOL and caller.school_id:
            school_id = school_id or caller.school_id
            authorize_school(caller, school_id, "list activities")
        criteria = _criteria(sponsor_id=sponsor_id, school_id=school_id, status=_status(status))
        records = self._store.filter(ActivitySubmission, **criteria)
        return tuple(sorted(records, key=lambda item: item.requested_at, reverse=True))

    def payment_proofs(self, caller: Caller, *, status: SubmissionStatus | str | None = None) -> Sequence[PaymentProof]:
        authorize(caller, FUNDING_REVIEWERS, "list payment proofs")
        records = self._store.filter(PaymentProof, **_criteria(status=_status(status)))
        return tuple(sorted(records, key=lambda item: item.uploaded_at, reverse=True))

    def proof_for_submission(self, caller: Caller, submission_id: str) -> Optional[PaymentProof]:
        submission = self._store.get(FundingSubmission, submission_id)
        authorize_owner(caller, submission.sponsor_id, FUNDING_REVIEWERS, "view payment proofs")
        proofs = self._store.filter(PaymentProof, submission_id=submission.id)
        return proofs[0] if proofs else None

    def proof_overview(self, caller: Caller) -> List[Dict[str, Any]]:
        """Join each proof with the child of its funding submission."""

        rows: List[Dict[str, Any]] = []
        for proof in self.payment_proofs(caller):
            submission = self._store.get(FundingSubmission, proof.submission_id)
            rows.append(
                {
                    "proof_id": proof.id,
                    "submission_id": submission.id,
                    "child_id": submission.matched_child_id,
                    "status": proof.status.value,
                    "uploaded_at": proof.uploaded_at.isoformat(),
                }
            )
        return rows

    def status_counts(self, caller: Caller, kind: str) -> Dict[str, int]:
        try:
            record_type, viewers = _RECORD_KINDS[kind]
        except KeyError as exc:
            raise ValidationError(f"Unknown record kind '{kind}'.") from exc
        authorize(caller, viewers, f"count {kind} records")
        counts = {status.value: 0 for status in SubmissionStatus}
        for record in self._store.filter(record_type):
            counts[record.status.value] += 1
        return counts


def _status(value: SubmissionStatus | str | None) -> SubmissionStatus | None:
    if value is None or isinstance(value, SubmissionStatus):
        return value
    try:
        return SubmissionStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown status '{value}'.") from exc


def _funding_status(value: FundingStatus | str | None) -> FundingStatus | None:
    if value is None or isinstance(value, FundingStatus):
        return value
    try:
        return FundingStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown funding status '{value}'.") from exc


def _criteria(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


__all__ = ["CareConnect"]
