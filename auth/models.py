"""
auth/models.py -- Domain dataclasses for users, roles, and ORCID profiles.

Pattern: Data class (pure data container, almost zero logic). Every type here
is a frozen dataclass, so values are immutable, hashable, and compare by
value. Stores and the session resolver do the work.

The user hierarchy is closed: GuestUser, ServiceUser, StandardUser. Code that
branches on a user matches on exactly these three classes and treats anything
else as a programming error. Roles are closed the same way.

Ids are typed per variant. GuestId(5) and StandardId(5) wrap the same integer
but never compare equal, so a guest id can never be used to look up a standard
account by accident.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

_ORCID_ID_RE = re.compile(r"^\d{4}-\d{4}-\d{4}-\d{3}[\dX]$")


# ---------------------------------------------------------------------------
# Ids
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _UserId:
    value: int

    def __post_init__(self) -> None:
        # bool is an int subclass; True must not pass as user 1.
        if not isinstance(self.value, int) or isinstance(self.value, bool):
            raise TypeError(f"{type(self).__name__} value must be an int, got {self.value!r}")

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class GuestId(_UserId):
    pass


@dataclass(frozen=True)
class ServiceId(_UserId):
    pass


@dataclass(frozen=True)
class StandardId(_UserId):
    pass


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class StandardRoleKind(str, Enum):
    STANDARD = "standard"
    ADMIN = "admin"


@dataclass(frozen=True)
class GuestRole:
    def __str__(self) -> str:
        return "guest"


@dataclass(frozen=True)
class ServiceRole:
    name: str

    def __str__(self) -> str:
        return f"service({self.name})"


@dataclass(frozen=True)
class StandardRole:
    """A role a human can assume. scope is an opaque organisational label."""

    kind: StandardRoleKind = StandardRoleKind.STANDARD
    scope: str | None = None

    def __str__(self) -> str:
        return self.kind.value if self.scope is None else f"{self.kind.value}({self.scope})"


Role = Union[GuestRole, ServiceRole, StandardRole]


# ---------------------------------------------------------------------------
# External profile
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrcidProfile:
    """Profile snapshot as supplied by ORCID.

    Only re-synced on login; this subsystem never edits it otherwise.
    """

    orcid_id: str
    given_name: str | None = None
    family_name: str | None = None
    credit_name: str | None = None
    primary_email: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.orcid_id, str) or not _ORCID_ID_RE.match(self.orcid_id):
            raise ValueError(f"Invalid ORCID iD: {self.orcid_id!r}")

    @property
    def display_name(self) -> str:
        """Credit name, else given + family name, else the ORCID iD. Never empty."""
        if self.credit_name and self.credit_name.strip():
            return self.credit_name.strip()
        parts = [p.strip() for p in (self.given_name, self.family_name) if p and p.strip()]
        if parts:
            return " ".join(parts)
        return self.orcid_id


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuestUser:
    """Lowest access, no identifying information."""

    id: GuestId
    role: GuestRole = field(default=GuestRole(), init=False)

    @property
    def display_name(self) -> str:
        return "Guest User"


@dataclass(frozen=True)
class ServiceUser:
    """Highest access; represents another internal service."""

    id: ServiceId
    name: str
    role: ServiceRole = field(init=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Service users must have a name")
        object.__setattr__(self, "role", ServiceRole(self.name))

    @property
    def display_name(self) -> str:
        return f"Service User ({self.name})"


@dataclass(frozen=True)
class StandardUser:
    """An ORCID-authenticated human with a primary role and optional extra roles."""

    id: StandardId
    role: StandardRole
    other_roles: tuple[StandardRole, ...]
    profile: OrcidProfile

    def __post_init__(self) -> None:
        # Accept any sequence from callers, store a tuple so the value stays hashable.
        object.__setattr__(self, "other_roles", tuple(self.other_roles))

    @property
    def display_name(self) -> str:
        return self.profile.display_name

    @property
    def assumable_roles(self) -> tuple[StandardRole, ...]:
        roles: list[StandardRole] = []
        for r in (self.role, *self.other_roles):
            if r not in roles:
                roles.append(r)
        return tuple(roles)


User = Union[GuestUser, ServiceUser, StandardUser]
UserId = Union[GuestId, ServiceId, StandardId]


@dataclass(frozen=True)
class StandardRecord:
    """A stored standard account as returned by the store.

    The store owns the mapping from ORCID iD to StandardId; this record is a
    read-only snapshot of one row plus its extra roles.
    """

    id: StandardId
    profile: OrcidProfile
    role: StandardRole
    other_roles: tuple[StandardRole, ...] = ()
    created_at: str | None = None
    updated_at: str | None = None

    def to_user(self) -> StandardUser:
        return StandardUser(id=self.id, role=self.role, other_roles=self.other_roles, profile=self.profile)
