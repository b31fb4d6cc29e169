"""
auth/codec.py -- JSON codecs for users, roles, and ORCID profiles.

One codec per user variant, each with encode() and decode(). IdentityCodec
dispatches on the "type" tag and is the only entry point the rest of the
code uses. An unknown tag is a DecodingFailure; there is no fallback branch
that produces a guest.

Wire shapes:
  {"type": "guest", "id": 5}
  {"type": "service", "id": 1, "name": "itc"}
  {"type": "standard", "id": 7, "role": {...}, "otherRoles": [{...}], "profile": {...}}

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Any

from auth.models import (
    GuestId,
    GuestRole,
    GuestUser,
    OrcidProfile,
    Role,
    ServiceId,
    ServiceRole,
    ServiceUser,
    StandardId,
    StandardRole,
    StandardRoleKind,
    StandardUser,
    User,
)


class DecodingFailure(ValueError):
    """A serialized user, role, or profile could not be decoded."""


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _obj(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise DecodingFailure(f"{what}: expected a JSON object, got {type(value).__name__}")
    return value


def _int_field(obj: dict, key: str) -> int:
    value = obj.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise DecodingFailure(f"Field {key!r}: expected an integer, got {value!r}")
    return value


def _str_field(obj: dict, key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise DecodingFailure(f"Field {key!r}: expected a string, got {value!r}")
    return value


def _opt_str_field(obj: dict, key: str) -> str | None:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        raise DecodingFailure(f"Field {key!r}: expected a string or null, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Roles and profiles
# ---------------------------------------------------------------------------


class RoleCodec:
    """{"type": "guest"} | {"type": "service", "name": ...} | {"type": "standard"|"admin", "scope": ...}"""

    def encode(self, role: Role) -> dict:
        if isinstance(role, GuestRole):
            return {"type": "guest"}
        if isinstance(role, ServiceRole):
            return {"type": "service", "name": role.name}
        if isinstance(role, StandardRole):
            return {"type": role.kind.value, "scope": role.scope}
        raise TypeError(f"Not a role: {role!r}")

    def decode(self, value: Any) -> Role:
        obj = _obj(value, "role")
        tag = obj.get("type")
        if tag == "guest":
            return GuestRole()
        if tag == "service":
            return ServiceRole(_str_field(obj, "name"))
        try:
            kind = StandardRoleKind(tag)
        except ValueError:
            raise DecodingFailure(f"Unknown role type: {tag!r}") from None
        return StandardRole(kind=kind, scope=_opt_str_field(obj, "scope"))

    def decode_standard(self, value: Any) -> StandardRole:
        role = self.decode(value)
        if not isinstance(role, StandardRole):
            raise DecodingFailure(f"Expected a standard role, got {role}")
        return role


class ProfileCodec:
    def encode(self, profile: OrcidProfile) -> dict:
        return {
            "orcidId": profile.orcid_id,
            "givenName": profile.given_name,
            "familyName": profile.family_name,
            "creditName": profile.credit_name,
            "primaryEmail": profile.primary_email,
        }

    def decode(self, value: Any) -> OrcidProfile:
        obj = _obj(value, "profile")
        fields = {
            "orcid_id": _str_field(obj, "orcidId"),
            "given_name": _opt_str_field(obj, "givenName"),
            "family_name": _opt_str_field(obj, "familyName"),
            "credit_name": _opt_str_field(obj, "creditName"),
            "primary_email": _opt_str_field(obj, "primaryEmail"),
        }
        try:
            return OrcidProfile(**fields)
        except ValueError as exc:
            raise DecodingFailure(str(exc)) from exc


role_codec = RoleCodec()
profile_codec = ProfileCodec()


# ---------------------------------------------------------------------------
# Per-variant user codecs
# ---------------------------------------------------------------------------


class GuestCodec:
    tag = "guest"

    def encode(self, user: GuestUser) -> dict:
        return {"type": self.tag, "id": user.id.value}

    def decode(self, obj: dict) -> GuestUser:
        return GuestUser(GuestId(_int_field(obj, "id")))


class ServiceCodec:
    tag = "service"

    def encode(self, user: ServiceUser) -> dict:
        return {"type": self.tag, "id": user.id.value, "name": user.name}

    def decode(self, obj: dict) -> ServiceUser:
        name = _str_field(obj, "name")
        if not name:
            raise DecodingFailure("Field 'name': service name must not be empty")
        return ServiceUser(ServiceId(_int_field(obj, "id")), name)


class StandardCodec:
    tag = "standard"

    def encode(self, user: StandardUser) -> dict:
        return {
            "type": self.tag,
            "id": user.id.value,
            "role": role_codec.encode(user.role),
            "otherRoles": [role_codec.encode(r) for r in user.other_roles],
            "profile": profile_codec.encode(user.profile),
        }

    def decode(self, obj: dict) -> StandardUser:
        other_roles = obj.get("otherRoles")
        if not isinstance(other_roles, list):
            raise DecodingFailure(f"Field 'otherRoles': expected a list, got {other_roles!r}")
        return StandardUser(
            id=StandardId(_int_field(obj, "id")),
            role=role_codec.decode_standard(obj.get("role")),
            other_roles=tuple(role_codec.decode_standard(r) for r in other_roles),
            profile=profile_codec.decode(obj.get("profile")),
        )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class IdentityCodec:
    """Dispatches to the codec registered for each user variant."""

    def __init__(self) -> None:
        self._by_tag = {c.tag: c for c in (GuestCodec(), ServiceCodec(), StandardCodec())}
        self._by_type = {
            GuestUser: self._by_tag["guest"],
            ServiceUser: self._by_tag["service"],
            StandardUser: self._by_tag["standard"],
        }

    @property
    def tags(self) -> frozenset[str]:
        return frozenset(self._by_tag)

    def encode(self, user: User) -> dict:
        codec = self._by_type.get(type(user))
        if codec is None:
            raise TypeError(f"Not a user: {user!r}")
        return codec.encode(user)

    def decode(self, value: Any) -> User:
        obj = _obj(value, "user")
        tag = obj.get("type")
        if not isinstance(tag, str):
            raise DecodingFailure(f"Field 'type': expected a string, got {tag!r}")
        codec = self._by_tag.get(tag)
        if codec is None:
            raise DecodingFailure(f"Unknown user type: {tag}")
        return codec.decode(obj)


identity_codec = IdentityCodec()
