"""Principals, authentication and record-level authorization.

Identity itself is delegated: anything implementing ``Authenticator`` can map
a bearer token to a ``Principal``. ``StaticTokenAuthenticator`` covers the
simple case of tokens listed in configuration, each entry written as
``token:user_id:role[:email]``.

Record access rule: the owner of a record, or any admin.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .exceptions import ConfigurationError, ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """An authenticated caller."""

    user_id: str
    role: Role = Role.USER
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class Authenticator(Protocol):
    def authenticate(self, token: str | None) -> Principal | None: ...


class StaticTokenAuthenticator:
    """Authenticate bearer tokens against a fixed table."""

    def __init__(self, tokens: dict[str, Principal]) -> None:
        self._tokens = dict(tokens)

    def __repr__(self) -> str:
        return f"StaticTokenAuthenticator(tokens={len(self._tokens)})"

    def principals(self) -> list[Principal]:
        return list(self._tokens.values())

    @classmethod
    def from_entries(cls, entries: Iterable[str]) -> StaticTokenAuthenticator:
        """Build from ``token:user_id:role[:email]`` entries.

        Raises:
            ConfigurationError: If an entry is malformed or names an unknown role.
        """
        tokens: dict[str, Principal] = {}
        for index, entry in enumerate(entries):
            parts = entry.split(":", 3)
            if len(parts) < 3 or not parts[0] or not parts[1]:
                raise ConfigurationError(
                    f"API token entry #{index + 1} must look like token:user_id:role[:email]"
                )
            token, user_id, role = parts[0], parts[1], parts[2]
            try:
                parsed_role = Role(role.strip().lower())
            except ValueError as e:
                raise ConfigurationError(
                    f"API token entry #{index + 1} has unknown role {role!r}"
                ) from e
            email = parts[3] if len(parts) == 4 and parts[3] else None
            tokens[token] = Principal(user_id=user_id, role=parsed_role, email=email)
        return cls(tokens)

    def authenticate(self, token: str | None) -> Principal | None:
        if not token:
            return None
        match: Principal | None = None
        # Compare against every entry so timing does not reveal which one matched
        for known, principal in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                match = principal
        return match


def require_principal(principal: Principal | None) -> Principal:
    """Return ``principal`` or raise ``UnauthorizedError`` if there is none."""
    if principal is None:
        raise UnauthorizedError("Authentication required")
    return principal


def authorize_record_access(principal: Principal | None, owner_id: str) -> Principal:
    """Allow the record owner or an admin.

    Raises:
        UnauthorizedError: If there is no principal.
        ForbiddenError: If the principal is neither owner nor admin.
    """
    principal = require_principal(principal)
    if principal.is_admin or principal.user_id == owner_id:
        return principal
    logger.warning(
        "Denied record access for user %s",
        principal.user_id,
        extra={"user_id": principal.user_id},
    )
    raise ForbiddenError("You do not have access to this record")


def require_admin(principal: Principal | None) -> Principal:
    principal = require_principal(principal)
    if not principal.is_admin:
        raise ForbiddenError("Administrator role required")
    return principal
