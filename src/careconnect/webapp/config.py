"""Configuration constants for the CareConnect web service."""
from __future__ import annotations

import os

from dotenv import load_dotenv

from ..models import DEFAULT_REJECTION_NOTE

load_dotenv()

SQLITE_FILE_NAME = os.environ.get("CARECONNECT_SQLITE", "careconnect.db")
UPLOAD_DIR = os.environ.get("CARECONNECT_UPLOAD_DIR", "uploads/proofs")
LOG_FILE = os.environ.get("CARECONNECT_LOG_FILE") or None
DEFAULT_ACTIVITY_REJECTION_NOTE = os.environ.get(
    "CARECONNECT_DEFAULT_REJECTION_NOTE", DEFAULT_REJECTION_NOTE
)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
SCHOOL_ID_HEADER = "X-School-Id"

__all__ = [
    "SQLITE_FILE_NAME",
    "UPLOAD_DIR",
    "LOG_FILE",
    "DEFAULT_ACTIVITY_REJECTION_NOTE",
    "USER_ID_HEADER",
    "USER_ROLE_HEADER",
    "SCHOOL_ID_HEADER",
]
