"""CareConnect package for the child-sponsorship approval workflow."""

from .admin import AuditLog
from .exceptions import (
    AuthorizationError,
    CareConnectError,
    DuplicateRecordError,
    InvalidStateError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from .files import LocalFileStorage
from .models import (
    ActivitySubmission,
    AuditEvent,
    Child,
    ChildrenCriteria,
    FundingStatus,
    FundingSubmission,
    Gender,
    ItemDonation,
    PaymentProof,
    Role,
    SubmissionStatus,
)
from .ops import HealthMonitor, StructuredLogger
from .security import Caller, authorize
from .service import CareConnect
from .store import InMemoryRecordStore, RecordStore

__all__ = [
    "ActivitySubmission",
    "AuditEvent",
    "AuditLog",
    "AuthorizationError",
    "Caller",
    "CareConnect",
    "CareConnectError",
    "Child",
    "ChildrenCriteria",
    "DuplicateRecordError",
    "FundingStatus",
    "FundingSubmission",
    "Gender",
    "HealthMonitor",
    "InMemoryRecordStore",
    "InvalidStateError",
    "ItemDonation",
    "LocalFileStorage",
    "NotFoundError",
    "PaymentProof",
    "PreconditionError",
    "RecordStore",
    "Role",
    "StructuredLogger",
    "SubmissionStatus",
    "ValidationError",
    "authorize",
]
