"""Caller identity resolution.

The orchestrator never authenticates anyone itself; it consumes an
IdentityProvider that either returns the current User or raises
UnauthenticatedError. HeaderIdentityProvider is the HTTP implementation
used by the API, trusting an upstream gateway to set X-Abraxas-User.
"""

from typing import Protocol

from sqlalchemy.orm import Session

from abraxas.db.models import User
from abraxas.errors.domain import UnauthenticatedError

USER_HEADER = "X-Abraxas-User"


class IdentityProvider(Protocol):
    """Resolves the caller of the current operation."""

    def get_current_caller(self) -> User:
        """Return the caller, or raise UnauthenticatedError."""
        ...


class HeaderIdentityProvider:
    """Resolves the caller from a user id (or email) set by the gateway.

    Args:
        db: SQLAlchemy session.
        user_ref: Header value; None or empty means unauthenticated.
    """

    def __init__(self, db: Session, user_ref: str | None) -> None:
        self._db = db
        self._user_ref = (user_ref or "").strip()

    def get_current_caller(self) -> User:
        if not self._user_ref:
            raise UnauthenticatedError()
        user = self._db.get(User, self._user_ref)
        if user is None:
            user = self._db.query(User).filter(User.email == self._user_ref).first()
        if user is None:
            raise UnauthenticatedError()
        return user

