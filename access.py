"""Scope-based authorization shared by upload, read, list and delete."""

from __future__ import annotations

from typing import Optional

from auth import Caller
from errors import AuthRequired, BadScope, Forbidden, ForbiddenAnonymous

# Author: Daniel Neugent

PERSONAL = "personal"
SHARED = "shared"
SCOPES = frozenset({PERSONAL, SHARED})


def validate_scope(scope: Optional[str]) -> str:
    if scope not in SCOPES:
        raise BadScope(f"unknown scope {scope!r}")
    return scope


def authorize_upload(scope: str, caller: Caller, *, allow_anonymous_shared: bool) -> str:
    """Return the owner to record for a new photo, or raise.

    Personal photos are always owned by the caller. Shared photos are owned by
    the caller when there is one, otherwise by nobody ("").
    """
    validate_scope(scope)
    if caller.authenticated:
        return caller.subject or ""
    if scope == SHARED and allow_anonymous_shared:
        return ""
    raise AuthRequired("upload requires authentication")


def authorize_read(scope: str, owner: str, caller: Caller) -> None:
    """Shared photos are public; personal photos belong to their owner only."""
    if scope != PERSONAL:
        return
    if not caller.authenticated:
        raise AuthRequired("personal photo requires authentication")
    if caller.subject != owner:
        raise Forbidden("personal photo belongs to another user")


def authorize_delete(scope: str, owner: str, caller: Caller) -> None:
    """Only the owner may delete, in either scope.

    Ownerless photos can never be deleted here since nobody can prove
    ownership of them.
    """
    if not owner:
        raise ForbiddenAnonymous("photo has no owner")
    if not caller.authenticated:
        raise AuthRequired("delete requires authentication")
    if caller.subject != owner:
        raise Forbidden("photo belongs to another user")
