"""
auth/store.py -- SQLAlchemy Core persistence for standard and guest users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_record
is the mapper. Route, resolver, and dependency code never touches SQL.

The store exclusively owns the mapping ORCID iD -> StandardId. The rest of the
auth package only reads and upserts through the methods below.

Concurrency:
  orcid_id carries a UNIQUE constraint. Two concurrent first logins for the
  same iD race on the INSERT; the loser gets IntegrityError and retries once
  as a plain lookup + profile refresh, so exactly one account is created.

  upsert() writes nothing when the stored profile already equals the incoming
  one. Logging in twice with an unchanged ORCID record leaves the row,
  including updated_at, untouched.

Errors:
  Every SQLAlchemy failure surfaces as PersistenceError. Callers treat it as
  fatal to the current request; nothing in here retries beyond the single
  unique-constraint fallback above.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import GuestId, OrcidProfile, StandardId, StandardRecord, StandardRole, StandardRoleKind

logger = logging.getLogger("sso.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_standard_users = Table(
    "standard_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("orcid_id", String(19), nullable=False, unique=True),
    Column("given_name", Text),
    Column("family_name", Text),
    Column("credit_name", Text),
    Column("primary_email", Text),
    Column("role_kind", String(16), nullable=False, server_default="standard"),
    Column("role_scope", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_standard_user_roles = Table(
    "standard_user_roles",
    _metadata,
    Column("user_id", Integer, nullable=False),
    Column("position", Integer, nullable=False),  # keeps otherRoles in order
    Column("role_kind", String(16), nullable=False),
    Column("role_scope", Text),
    UniqueConstraint("user_id", "position"),
)

_guest_users = Table(
    "guest_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_at", String(32), nullable=False),
)


class PersistenceError(Exception):
    """The store could not complete an operation."""


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by the login upsert."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _profile_columns(profile: OrcidProfile) -> dict:
    return {
        "given_name": profile.given_name,
        "family_name": profile.family_name,
        "credit_name": profile.credit_name,
        "primary_email": profile.primary_email,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for standard and guest users.

    Usage:
        store = UserStore("sqlite:///sso.db")
        record = store.upsert(profile, default_role=StandardRole())
        store.set_roles(record.id, StandardRole(StandardRoleKind.ADMIN), [StandardRole()])
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///sso.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # The session resolver calls the store from worker threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Standard users
    # ------------------------------------------------------------------

    def find_by_external_id(self, orcid_id: str) -> StandardRecord | None:
        """Look up a standard account by ORCID iD. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(_standard_users).where(_standard_users.c.orcid_id == orcid_id)).fetchone()
                return _row_to_record(row, self._other_roles(conn, row.id)) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"lookup of {orcid_id} failed") from exc

    def get_standard(self, user_id: StandardId) -> StandardRecord | None:
        """Look up a standard account by internal id. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(_standard_users).where(_standard_users.c.id == user_id.value)).fetchone()
                return _row_to_record(row, self._other_roles(conn, row.id)) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"lookup of standard user {user_id} failed") from exc

    def upsert(self, profile: OrcidProfile, default_role: StandardRole | None = None) -> StandardRecord:
        """Create or refresh the account for profile.orcid_id and return it.

        New accounts get default_role as their primary role and no other
        roles. Existing accounts keep their roles; only changed profile
        columns are written.
        """
        default_role = default_role or StandardRole()
        try:
            try:
                self._upsert_once(profile, default_role)
            except IntegrityError:
                logger.info("Concurrent first login for %s; retrying as lookup", profile.orcid_id)
                self._upsert_once(profile, default_role)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"upsert of {profile.orcid_id} failed") from exc

        record = self.find_by_external_id(profile.orcid_id)
        if record is None:
            raise PersistenceError(f"{profile.orcid_id} vanished after upsert")
        return record

    def _upsert_once(self, profile: OrcidProfile, default_role: StandardRole) -> None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_standard_users).where(_standard_users.c.orcid_id == profile.orcid_id)
            ).fetchone()
            if row is None:
                now = _now_iso()
                result = conn.execute(
                    _standard_users.insert().values(
                        orcid_id=profile.orcid_id,
                        role_kind=default_role.kind.value,
                        role_scope=default_role.scope,
                        created_at=now,
                        updated_at=now,
                        **_profile_columns(profile),
                    )
                )
                logger.info("Created standard user %s for %s", result.inserted_primary_key[0], profile.orcid_id)
            elif _row_to_profile(row) != profile:
                conn.execute(
                    _standard_users.update()
                    .where(_standard_users.c.id == row.id)
                    .values(updated_at=_now_iso(), **_profile_columns(profile))
                )
                logger.info("Refreshed ORCID profile for standard user %s", row.id)
            conn.commit()

    def set_roles(self, user_id: StandardId, primary: StandardRole, others: list[StandardRole] | tuple = ()) -> bool:
        """Replace the primary and other roles of a user.

        Returns True if the user exists, False otherwise.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _standard_users.update()
                    .where(_standard_users.c.id == user_id.value)
                    .values(role_kind=primary.kind.value, role_scope=primary.scope, updated_at=_now_iso())
                )
                if result.rowcount == 0:
                    conn.rollback()
                    return False
                conn.execute(_standard_user_roles.delete().where(_standard_user_roles.c.user_id == user_id.value))
                for position, role in enumerate(others):
                    conn.execute(
                        _standard_user_roles.insert().values(
                            user_id=user_id.value,
                            position=position,
                            role_kind=role.kind.value,
                            role_scope=role.scope,
                        )
                    )
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"set_roles for standard user {user_id} failed") from exc
        return True

    def _other_roles(self, conn: Connection, user_id: int) -> tuple[StandardRole, ...]:
        rows = conn.execute(
            select(_standard_user_roles)
            .where(_standard_user_roles.c.user_id == user_id)
            .order_by(_standard_user_roles.c.position)
        ).fetchall()
        return tuple(StandardRole(StandardRoleKind(r.role_kind), r.role_scope) for r in rows)

    # ------------------------------------------------------------------
    # Guest users
    # ------------------------------------------------------------------

    def create_guest(self) -> GuestId:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_guest_users.insert().values(created_at=_now_iso()))
                conn.commit()
                return GuestId(result.inserted_primary_key[0])
        except SQLAlchemyError as exc:
            raise PersistenceError("guest creation failed") from exc

    def guest_exists(self, guest_id: GuestId) -> bool:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(select(_guest_users.c.id).where(_guest_users.c.id == guest_id.value)).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"lookup of guest {guest_id} failed") from exc
        return row is not None

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database health check failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_profile(row) -> OrcidProfile:
    return OrcidProfile(
        orcid_id=row.orcid_id,
        given_name=row.given_name,
        family_name=row.family_name,
        credit_name=row.credit_name,
        primary_email=row.primary_email,
    )


def _row_to_record(row, other_roles: tuple[StandardRole, ...]) -> StandardRecord:
    return StandardRecord(
        id=StandardId(row.id),
        profile=_row_to_profile(row),
        role=StandardRole(StandardRoleKind(row.role_kind), row.role_scope),
        other_roles=other_roles,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
