"""Role checks applied once at the entry of every workflow operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .exceptions import AuthorizationError
from .models import Role

SPONSORS = frozenset({Role.SPONSOR})
FUNDING_REVIEWERS = frozenset({Role.STUART, Role.ADMIN})
ACTIVITY_REVIEWERS = frozenset({Role.SCHOOL, Role.ADMIN})
CHILD_MANAGERS = frozenset({Role.SCHOOL, Role.ADMIN})
ACTIVITY_VIEWERS = FUNDING_REVIEWERS | ACTIVITY_REVIEWERS


@dataclass(frozen=True, slots=True)
class Caller:
    """Identity supplied by the upstream auth provider.

    ``school_id`` is only meaningful for ``school`` callers and ties them to the
    activities of their own school.
    """

    user_id: str
    role: Role
    school_id: Optional[str] = None

    @classmethod
    def parse(cls, user_id: str | None, role: str | None, school_id: str | None = None) -> "Caller":
        """Build a caller from raw identity claims, raising ``ValueError`` when incomplete."""

        if not user_id or not user_id.strip():
            raise ValueError("Missing user id.")
        if not role:
            raise ValueError("Missing role.")
        try:
            parsed_role = Role(role.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown role '{role}'.") from exc
        return cls(user_id=user_id.strip(), role=parsed_role, school_id=(school_id or "").strip() or None)


def authorize(caller: Caller, allowed: Iterable[Role], action: str) -> Caller:
    """Return ``caller`` when its role is in ``allowed``; raise otherwise."""

    roles = frozenset(allowed)
    if caller.role not in roles:
        names = ", ".join(sorted(role.value for role in roles))
        raise AuthorizationError(f"Role '{caller.role.value}' may not {action}; requires one of: {names}.")
    return caller


def authorize_school(caller: Caller, school_id: str, action: str) -> None:
    """Restrict school reviewers that carry a ``school_id`` to their own school."""

    if caller.role is Role.SCHOOL and caller.school_id and caller.school_id != school_id:
        raise AuthorizationError(f"School '{caller.school_id}' may not {action} for school '{school_id}'.")


def authorize_owner(caller: Caller, owner_id: Optional[str], reviewers: Iterable[Role], action: str) -> Caller:
    """Let sponsors reach only records they own and ``reviewers`` reach any record.

    An ``owner_id`` of ``None`` stands for records of every sponsor.
    """

    if caller.role is Role.SPONSOR:
        if owner_id != caller.user_id:
            raise AuthorizationError(f"Sponsor '{caller.user_id}' may only {action} for their own records.")
        return caller
    return authorize(caller, reviewers, action)


__all__ = [
    "ACTIVITY_REVIEWERS",
    "ACTIVITY_VIEWERS",
    "CHILD_MANAGERS",
    "FUNDING_REVIEWERS",
    "SPONSORS",
    "Caller",
    "authorize",
    "authorize_owner",
    "authorize_school",
]
