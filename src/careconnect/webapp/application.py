"""FastAPI JSON surface for the CareConnect sponsorship workflow.

Routes mirror the portal's ``/v1`` REST paths. The caller's identity arrives
in headers set by the upstream auth provider; every route hands it straight to
:class:`~careconnect.service.CareConnect`, which performs the role checks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..exceptions import (
    AuthorizationError,
    CareConnectError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from ..files import LocalFileStorage
from ..ops import StructuredLogger
from ..security import Caller
from ..service import CareConnect
from .config import DEFAULT_ACTIVITY_REJECTION_NOTE, LOG_FILE, SQLITE_FILE_NAME, UPLOAD_DIR
from .persistence import SqlRecordStore, build_engine

ERROR_STATUS = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    InvalidStateError: 409,
    PreconditionError: 412,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class ChildIn(BaseModel):
    name: str
    school_id: str
    grade: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None


class FundingIn(BaseModel):
    period: int
    criteria: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


class FundingApprovalIn(BaseModel):
    matched_child_id: str
    payment_link: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class RejectionIn(BaseModel):
    reason: Optional[str] = None


class MatchIn(BaseModel):
    sponsor_id: str
    child_id: str
    payment_link: str
    period: int = 1
    start_date: Optional[datetime] = None
    notes: Optional[str] = None


class ItemDonationIn(BaseModel):
    name: str
    quantity: int


class ActivityIn(BaseModel):
    child_id: str
    school_id: str
    title: str
    detail: str
    location: str
    event_start: datetime
    event_end: datetime
    item_donations: List[ItemDonationIn] = Field(default_factory=list)


class ProofIn(BaseModel):
    submission_id: str
    image_path: str


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def default_service() -> CareConnect:
    return CareConnect(
        SqlRecordStore(build_engine(SQLITE_FILE_NAME)),
        files=LocalFileStorage(UPLOAD_DIR),
        logger=StructuredLogger(path=LOG_FILE),
        default_rejection_note=DEFAULT_ACTIVITY_REJECTION_NOTE,
    )


def current_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_school_id: Optional[str] = Header(None),
) -> Caller:
    try:
        return Caller.parse(x_user_id, x_user_role, x_school_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def create_app(service: CareConnect | None = None) -> FastAPI:
    desk = service or default_service()
    app = FastAPI(title="CareConnect")
    app.state.service = desk

    @app.exception_handler(CareConnectError)
    async def care_connect_error(_request: Request, exc: CareConnectError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            400,
        )
        return JSONResponse({"detail": str(exc), "error": type(exc).__name__}, status_code=status_code)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return desk.health()

    # -- children -----------------------------------------------------------
    @app.post("/v1/children", status_code=201)
    def register_child(body: ChildIn, caller: Caller = Depends(current_caller)):
        child = desk.register_child(
            caller,
            name=body.name,
            school_id=body.school_id,
            grade=body.grade,
            age=body.age,
            gender=body.gender,
        )
        return child.as_dict()

    @app.get("/v1/children")
    def list_children(sponsor_id: Optional[str] = None, caller: Caller = Depends(current_caller)):
        if sponsor_id:
            return [child.as_dict() for child in desk.sponsored_children(caller, sponsor_id)]
        return [child.as_dict() for child in desk.available_children()]

    @app.get("/v1/children/filter")
    def filter_children(
        school_id: Optional[str] = None,
        grade: Optional[str] = None,
        gender: Optional[str] = None,
        funding_status: Optional[str] = None,
        caller: Caller = Depends(current_caller),
    ):
        records = desk.find_children(
            school_id=school_id, grade=grade, gender=gender, funding_status=funding_status
        )
        return [child.as_dict() for child in records]

    @app.get("/v1/children/{child_id}")
    def get_child(child_id: str, caller: Caller = Depends(current_caller)):
        return desk.get_child(child_id).as_dict()

    @app.get("/v1/schools/{school_id}/children")
    def school_children(school_id: str, caller: Caller = Depends(current_caller)):
        return [child.as_dict() for child in desk.find_children(school_id=school_id)]

    # -- funding submissions --------------------------------------------------
    @app.get("/v1/funding-submissions")
    def list_funding(status: Optional[str] = None, caller: Caller = Depends(current_caller)):
        return [item.as_dict() for item in desk.funding_submissions(caller, status=status)]

    @app.get("/v1/funding-submissions/counts")
    def funding_counts(caller: Caller = Depends(current_caller)):
        return desk.status_counts(caller, "funding")

    @app.get("/v1/funding-submissions/sponsor/{sponsor_id}")
    def list_sponsor_funding(sponsor_id: str, status: Optional[str] = None, caller: Caller = Depends(current_caller)):
        return [item.as_dict() for item in desk.funding_submissions(caller, sponsor_id=sponsor_id, status=status)]

    @app.get("/v1/funding-submissions/{submission_id}")
    def get_funding(submission_id: str, caller: Caller = Depends(current_caller)):
        return desk.get_funding(caller, submission_id).as_dict()

    @app.post("/v1/funding-submissions", status_code=201)
    def submit_funding(body: FundingIn, caller: Caller = Depends(current_caller)):
        submission = desk.submit_funding(caller, period=body.period, criteria=body.criteria, notes=body.notes)
        return {"message": "Submission created successfully", "submission": submission.as_dict()}

    @app.post("/v1/funding-submissions/match", status_code=201)
    def match_sponsor(body: MatchIn, caller: Caller = Depends(current_caller)):
        submission = desk.match_sponsor(
            caller,
            sponsor_id=body.sponsor_id,
            child_id=body.child_id,
            payment_link=body.payment_link,
            period=body.period,
            start_date=body.start_date,
            notes=body.notes,
        )
        return submission.as_dict()

    @app.patch("/v1/funding-submissions/{submission_id}/approve")
    def approve_funding(submission_id: str, body: FundingApprovalIn, caller: Caller = Depends(current_caller)):
        submission = desk.approve_funding(
            caller,
            submission_id,
            matched_child_id=body.matched_child_id,
            payment_link=body.payment_link,
            start_date=body.start_date,
            end_date=body.end_date,
        )
        return submission.as_dict()

    @app.patch("/v1/funding-submissions/{submission_id}/reject")
    def reject_funding(submission_id: str, body: Optional[RejectionIn] = None, caller: Caller = Depends(current_caller)):
        return desk.reject_funding(caller, submission_id, body.reason if body else None).as_dict()

    # -- event submissions (sponsor activities) ------------------------------
    @app.get("/v1/event-submissions")
    def list_activities(
        status: Optional[str] = None,
        school_id: Optional[str] = None,
        sponsor_id: Optional[str] = None,
        caller: Caller = Depends(current_caller),
    ):
        records = desk.activities(caller, sponsor_id=sponsor_id, school_id=school_id, status=status)
        return [item.as_dict() for item in records]

    @app.get("/v1/event-submissions/counts")
    def activity_counts(caller: Caller = Depends(current_caller)):
        return desk.status_counts(caller, "activity")

    @app.get("/v1/event-submissions/sponsor/{sponsor_id}")
    def list_sponsor_activities(sponsor_id: str, caller: Caller = Depends(current_caller)):
        return [item.as_dict() for item in desk.activities(caller, sponsor_id=sponsor_id)]

    @app.get("/v1/event-submissions/school/{school_id}")
    def list_school_activities(school_id: str, caller: Caller = Depends(current_caller)):
        return [item.as_dict() for item in desk.activities(caller, school_id=school_id)]

    @app.get("/v1/event-submissions/{activity_id}")
    def get_activity(activity_id: str, caller: Caller = Depends(current_caller)):
        return desk.get_activity(caller, activity_id).as_dict()

    @app.post("/v1/event-submissions", status_code=201)
    def submit_activity(body: ActivityIn, caller: Caller = Depends(current_caller)):
        activity = desk.submit_activity(
            caller,
            child_id=body.child_id,
            school_id=body.school_id,
            title=body.title,
            detail=body.detail,
            location=body.location,
            event_start=body.event_start,
            event_end=body.event_end,
            item_donations=[{"name": item.name, "quantity": item.quantity} for item in body.item_donations],
        )
        return activity.as_dict()

    @app.patch("/v1/event-submissions/{activity_id}/approve")
    def approve_activity(activity_id: str, caller: Caller = Depends(current_caller)):
        return desk.approve_activity(caller, activity_id).as_dict()

    @app.patch("/v1/event-submissions/{activity_id}/reject")
    def reject_activity(activity_id: str, body: Optional[RejectionIn] = None, caller: Caller = Depends(current_caller)):
        return desk.reject_activity(caller, activity_id, body.reason if body else None).as_dict()

    # -- payment proofs -------------------------------------------------------
    @app.get("/v1/payment-proofs")
    def list_proofs(caller: Caller = Depends(current_caller)):
        return desk.proof_overview(caller)

    @app.get("/v1/payment-proofs/counts")
    def proof_counts(caller: Caller = Depends(current_caller)):
        return desk.status_counts(caller, "proof")

    @app.get("/v1/payment-proofs/submission/{submission_id}")
    def proof_for_submission(submission_id: str, caller: Caller = Depends(current_caller)):
        proof = desk.proof_for_submission(caller, submission_id)
        if proof is None:
            raise HTTPException(status_code=404, detail="Payment proof not found")
        return proof.as_dict()

    @app.get("/v1/payment-proofs/{proof_id}")
    def get_proof(proof_id: str, caller: Caller = Depends(current_caller)):
        return desk.get_proof(caller, proof_id).as_dict()

    @app.post("/v1/payment-proofs", status_code=201)
    def upload_proof(body: ProofIn, caller: Caller = Depends(current_caller)):
        proof = desk.upload_proof(caller, body.submission_id, body.image_path)
        return {"message": "Payment proof uploaded successfully.", "payment_proof": proof.as_dict()}

    @app.post("/v1/payment-proofs/submission/{submission_id}/file", status_code=201)
    async def upload_proof_file(
        submission_id: str,
        request: Request,
        filename: str = "proof",
        caller: Caller = Depends(current_caller),
    ):
        data = await request.body()
        # file write and store lock stay off the event loop
        proof = await run_in_threadpool(desk.upload_proof_file, caller, submission_id, filename, data)
        return {"message": "Payment proof uploaded successfully.", "payment_proof": proof.as_dict()}

    @app.patch("/v1/payment-proofs/{proof_id}/approve")
    def approve_proof(proof_id: str, caller: Caller = Depends(current_caller)):
        return desk.approve_proof(caller, proof_id).as_dict()

    @app.patch("/v1/payment-proofs/{proof_id}/reject")
    def reject_proof(proof_id: str, body: Optional[RejectionIn] = None, caller: Caller = Depends(current_caller)):
        return desk.reject_proof(caller, proof_id, body.reason if body else None).as_dict()

    return app


__all__ = ["ERROR_STATUS", "create_app", "current_caller", "default_service"]
