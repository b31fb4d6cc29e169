"""
auth/tokens.py -- Signed session tokens.

Security design decisions:
  Format: python-jose JWS compact serialization with HS256,
       base64url(header) . base64url(payload) . base64url(signature).
       The signing key never leaves this service; nothing else issues tokens.

  Payload: exactly the keys type, id, role, otherRoles, iat, exp.
       role is present for service and standard users, otherRoles for standard
       users only. The ORCID profile is never embedded -- a token carries a
       claim about who the caller is, not a copy of their record.

  Verification order: only the header segment is parsed before the
       signature check, so a token is MALFORMED only when its header is. Any
       change to the payload or signature segments, including a non-canonical
       base64url signature, is BAD_SIGNATURE. The signature is checked before
       any payload field is read. jose compares HMACs with hmac.compare_digest.
       Expiry is checked against the caller's `now` at full precision, not
       the wall clock, so verification stays a pure function.

  Failure kinds: MALFORMED, BAD_SIGNATURE, EXPIRED, UNKNOWN_VARIANT. The
       distinction is for server-side logs only. Every kind means "not
       authenticated" to the client; telling them apart in a response would
       hand out an oracle on the signing scheme.

  Unknown variants fail closed. A token whose type tag is not one of guest,
       service, standard is rejected even if the signature is good.

Layer rule: no imports from api/. core/ is not needed here -- TokenCodec takes
its key and TTL as arguments so tests can build one without settings.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from jose import jws
from jose.exceptions import JWSError

from auth.codec import DecodingFailure, role_codec
from auth.models import (
    GuestId,
    GuestRole,
    GuestUser,
    Role,
    ServiceId,
    ServiceRole,
    ServiceUser,
    StandardId,
    StandardRole,
    StandardUser,
    User,
    UserId,
)

logger = logging.getLogger("sso.auth.tokens")

_ALGORITHM = "HS256"

_GUEST_KEYS = frozenset({"type", "id", "iat", "exp"})
_SERVICE_KEYS = _GUEST_KEYS | {"role"}
_STANDARD_KEYS = _SERVICE_KEYS | {"otherRoles"}

_KEYS_BY_TYPE = {
    "guest": _GUEST_KEYS,
    "service": _SERVICE_KEYS,
    "standard": _STANDARD_KEYS,
}


class TokenErrorKind(str, Enum):
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    UNKNOWN_VARIANT = "unknown_variant"


class TokenError(Exception):
    """A session token failed verification. `kind` is for logs, not for clients."""

    def __init__(self, kind: TokenErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind


@dataclass(frozen=True)
class SessionClaim:
    """The verified content of a session token."""

    type: str
    user_id: UserId
    role: Role
    other_roles: tuple[StandardRole, ...]
    issued_at: int
    expires_at: int

    def matches(self, user: User) -> bool:
        """True if this claim describes `user` (variant, id, and roles)."""
        return (
            _type_tag(user) == self.type
            and user.id == self.user_id
            and user.role == self.role
            and tuple(getattr(user, "other_roles", ())) == self.other_roles
        )

    def to_user(self) -> GuestUser | ServiceUser:
        """Rebuild a guest or service user. Standard users need a store lookup for the profile."""
        if self.type == "guest":
            return GuestUser(self.user_id)
        if self.type == "service":
            return ServiceUser(self.user_id, self.role.name)
        raise ValueError("Standard claims cannot be turned into a user without a profile lookup")


def _type_tag(user: User) -> str:
    if isinstance(user, GuestUser):
        return "guest"
    if isinstance(user, ServiceUser):
        return "service"
    if isinstance(user, StandardUser):
        return "standard"
    raise TypeError(f"Not a user: {user!r}")


def _unix(now: datetime) -> int:
    return int(now.timestamp())


def _decode_segment(segment: str) -> bytes | None:
    """Strict base64url: None unless `segment` is the canonical unpadded encoding of its bytes."""
    try:
        data = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except ValueError:
        return None
    if base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii") != segment:
        return None
    return data


def _parse_header(segment: str) -> object:
    data = _decode_segment(segment)
    if data is None:
        return None
    try:
        return json.loads(data)
    except ValueError:
        return None


class TokenCodec:
    """Issues and verifies session tokens with a single symmetric key.

    Usage:
        codec = TokenCodec(settings.secret_key, settings.token_ttl_seconds)
        token = codec.issue(user, datetime.now(timezone.utc))
        claim = codec.verify(token, datetime.now(timezone.utc))
    """

    def __init__(self, secret_key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._key = secret_key
        self.ttl_seconds = ttl_seconds

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def payload_for(self, user: User, now: datetime) -> dict:
        iat = _unix(now)
        payload: dict = {"type": _type_tag(user), "id": user.id.value}
        if isinstance(user, (ServiceUser, StandardUser)):
            payload["role"] = role_codec.encode(user.role)
        if isinstance(user, StandardUser):
            payload["otherRoles"] = [role_codec.encode(r) for r in user.other_roles]
        payload["iat"] = iat
        payload["exp"] = iat + self.ttl_seconds
        return payload

    def issue(self, user: User, now: datetime) -> str:
        return jws.sign(self.payload_for(user, now), self._key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, now: datetime) -> SessionClaim:
        """Verify signature and expiry, then decode the claim.

        Raises:
            TokenError: with kind MALFORMED, BAD_SIGNATURE, EXPIRED, or UNKNOWN_VARIANT.
        """
        if not isinstance(token, str) or not token:
            raise TokenError(TokenErrorKind.MALFORMED, "empty token")

        # Only the header segment decides MALFORMED. Anything wrong past it is tampering.
        header_segment, _, rest = token.partition(".")
        _, dot, signature_segment = rest.rpartition(".")
        if not dot:
            raise TokenError(TokenErrorKind.MALFORMED, "expected header.payload.signature")
        if not isinstance(_parse_header(header_segment), dict):
            raise TokenError(TokenErrorKind.MALFORMED, "header is not a base64url JSON object")

        if _decode_segment(signature_segment) is None:
            raise TokenError(TokenErrorKind.BAD_SIGNATURE, "signature is not canonical base64url")
        try:
            raw = jws.verify(token, self._key, algorithms=[_ALGORITHM])
        except JWSError as exc:
            raise TokenError(TokenErrorKind.BAD_SIGNATURE, str(exc)) from exc

        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise TokenError(TokenErrorKind.MALFORMED, "payload is not JSON") from exc
        if not isinstance(payload, dict):
            raise TokenError(TokenErrorKind.MALFORMED, "payload is not an object")

        return self._decode_claim(payload, now)

    def _decode_claim(self, payload: dict, now: datetime) -> SessionClaim:
        tag = payload.get("type")
        if not isinstance(tag, str):
            raise TokenError(TokenErrorKind.MALFORMED, "missing type tag")
        expected_keys = _KEYS_BY_TYPE.get(tag)
        if expected_keys is None:
            raise TokenError(TokenErrorKind.UNKNOWN_VARIANT, f"unknown user type {tag!r}")
        if set(payload) != expected_keys:
            raise TokenError(TokenErrorKind.MALFORMED, f"unexpected keys {sorted(payload)}")

        for key in ("id", "iat", "exp"):
            value = payload[key]
            if not isinstance(value, int) or isinstance(value, bool):
                raise TokenError(TokenErrorKind.MALFORMED, f"{key} is not an integer")
        iat, exp = payload["iat"], payload["exp"]
        if exp < iat:
            raise TokenError(TokenErrorKind.MALFORMED, "exp precedes iat")
        # Full precision: exp=E is still valid at E.0 but not at E.5.
        if now.timestamp() > exp:
            raise TokenError(TokenErrorKind.EXPIRED, f"expired at {exp}")

        try:
            if tag == "guest":
                return SessionClaim(tag, GuestId(payload["id"]), GuestRole(), (), iat, exp)
            if tag == "service":
                role = role_codec.decode(payload["role"])
                if not isinstance(role, ServiceRole) or not role.name:
                    raise DecodingFailure("service token must carry a service role")
                return SessionClaim(tag, ServiceId(payload["id"]), role, (), iat, exp)
            other_roles = payload["otherRoles"]
            if not isinstance(other_roles, list):
                raise DecodingFailure("otherRoles is not a list")
            return SessionClaim(
                tag,
                StandardId(payload["id"]),
                role_codec.decode_standard(payload["role"]),
                tuple(role_codec.decode_standard(r) for r in other_roles),
                iat,
                exp,
            )
        except DecodingFailure as exc:
            raise TokenError(TokenErrorKind.MALFORMED, str(exc)) from exc

    def verify_or_none(self, token: str | None, now: datetime) -> SessionClaim | None:
        """Soft variant for request auth: any failure is logged and treated as anonymous."""
        if not token:
            return None
        try:
            return self.verify(token, now)
        except TokenError as exc:
            logger.info("Rejected session token (%s)", exc.kind.value)
            return None
