"""
auth/access.py -- The access lattice and minimum-access checks.

Access is a fixed total order:

    GUEST (0) < STANDARD (1) < ADMIN (2) < SERVICE (3)

The integer values are a security-policy constant. Authorization decisions
are plain comparisons on this order, so reordering or renumbering is a
breaking policy change and needs a version bump, never a quiet edit.

verify_access() returns an AccessDenied value instead of raising. The caller
has to look at the result; the HTTP layer turns a denial into a bare 403 and
logs the detail server-side only.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from auth.models import (
    GuestRole,
    GuestUser,
    Role,
    ServiceRole,
    ServiceUser,
    StandardRole,
    StandardRoleKind,
    StandardUser,
    User,
    UserId,
)


class Access(IntEnum):
    GUEST = 0
    STANDARD = 1
    ADMIN = 2
    SERVICE = 3


_STANDARD_ACCESS = {
    StandardRoleKind.STANDARD: Access.STANDARD,
    StandardRoleKind.ADMIN: Access.ADMIN,
}


class InvalidRoleSelection(ValueError):
    """The requested acting role is not one the user may assume."""

    def __init__(self, user: User, role: Role) -> None:
        super().__init__(f"{user.display_name} (User {user.id}) cannot act as {role}")
        self.user_id = user.id
        self.role = role


@dataclass(frozen=True)
class AccessDenied:
    """Diagnostic detail for a failed access check. Log it; never send it to the client."""

    display_name: str
    user_id: UserId
    role: Role
    required: Access

    def __str__(self) -> str:
        return (
            f"{self.display_name} (User {self.user_id}, {self.role}) "
            f"does not have required access {self.required.name}."
        )


def access_of(role: Role) -> Access:
    if isinstance(role, GuestRole):
        return Access.GUEST
    if isinstance(role, ServiceRole):
        return Access.SERVICE
    if isinstance(role, StandardRole):
        return _STANDARD_ACCESS[role.kind]
    raise TypeError(f"Not a role: {role!r}")


def role_of(user: User, acting_role: Role | None = None) -> Role:
    """Return the role the user is acting as.

    Guests and services have exactly one role. Standard users act as their
    primary role unless acting_role names another assumable role.

    Raises:
        InvalidRoleSelection: acting_role is not assumable by this user.
    """
    if isinstance(user, (GuestUser, ServiceUser)):
        if acting_role is not None and acting_role != user.role:
            raise InvalidRoleSelection(user, acting_role)
        return user.role
    if isinstance(user, StandardUser):
        if acting_role is None:
            return user.role
        if acting_role not in user.assumable_roles:
            raise InvalidRoleSelection(user, acting_role)
        return acting_role
    raise TypeError(f"Not a user: {user!r}")


def with_acting_role(user: StandardUser, role: StandardRole) -> StandardUser:
    """Return a copy of user acting as role; the rest of the assumable roles keep their order."""
    if role not in user.assumable_roles:
        raise InvalidRoleSelection(user, role)
    others = tuple(r for r in user.assumable_roles if r != role)
    return StandardUser(id=user.id, role=role, other_roles=others, profile=user.profile)


def verify_access(user: User, required: Access, acting_role: Role | None = None) -> AccessDenied | None:
    """Return None if the user's acting role grants at least `required`, else AccessDenied.

    Raises:
        InvalidRoleSelection: acting_role is not assumable by this user.
    """
    role = role_of(user, acting_role)
    if access_of(role) >= required:
        return None
    return AccessDenied(display_name=user.display_name, user_id=user.id, role=role, required=required)
