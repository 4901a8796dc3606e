"""
iam/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IAMStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency guarantees provided here (not in the services):
  - UNIQUE(email, tenant_id) on users: two concurrent signups for the same
    address in the same tenant cannot both insert. The loser gets
    sqlalchemy.exc.IntegrityError; services turn it into a conflict.
  - Partial unique index on invitations(email, tenant_id) WHERE status =
    'PENDING': at most one pending invitation per address per tenant.
  - increment_user_count() is a conditional UPDATE (current_users <
    max_users). Zero rows updated means the tenant is full.
  - increment_otp_attempts() / mark_otp_verified() / accept_invitation() are
    conditional UPDATEs too, so two racing requests cannot both consume the
    same attempt, code or invitation.

Storage conventions:
  Timestamps: ISO 8601 UTC text with microseconds. Every value written goes
      through _iso(), so lexicographic comparison matches time order.
  Scopes: JSON array text.
  Booleans: INTEGER 0/1.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
)
from sqlalchemy.engine import Engine

from iam.models import (
    OTP,
    ApiKey,
    Invitation,
    InvitationStatus,
    OAuthProvider,
    OTPPurpose,
    PasswordResetToken,
    RefreshToken,
    SubscriptionPlan,
    Tenant,
    TenantStatus,
    User,
    UserSession,
    UserStatus,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tenants = Table(
    "tenants",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("company_name", String(255), nullable=False),
    Column("status", String(20), nullable=False),
    Column("subscription_plan", String(20), nullable=False),
    Column("max_users", Integer, nullable=False),
    Column("current_users", Integer, nullable=False, server_default="0"),
    Column("trial_expires_at", String(40)),
    Column("subscription_expires_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("email", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("picture", Text),
    Column("status", String(20), nullable=False),
    Column("scopes", Text, nullable=False, server_default="[]"),
    Column("oauth_provider", String(20)),
    Column("oauth_provider_id", String(255)),
    Column("otp_enabled", Integer, nullable=False, server_default="0"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    UniqueConstraint("email", "tenant_id", name="uq_users_email_tenant"),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("token", String(128), nullable=False, unique=True),
    Column("scopes", Text, nullable=False, server_default="[]"),
    Column("status", String(20), nullable=False),
    Column("invited_by", String(36), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("accepted_at", String(40)),
    Column("accepted_by", String(36)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

Index(
    "uq_invitations_pending_email_tenant",
    _invitations.c.email,
    _invitations.c.tenant_id,
    unique=True,
    sqlite_where=_invitations.c.status == InvitationStatus.PENDING.value,
    postgresql_where=_invitations.c.status == InvitationStatus.PENDING.value,
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("tenant_id", String(36), nullable=False, index=True),
    Column("user_id", String(36)),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("key_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("key_prefix", String(64), nullable=False),  # display only
    Column("scopes", Text, nullable=False, server_default="[]"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("expires_at", String(40)),
    Column("last_used_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_otps = Table(
    "otps",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("contact", String(255), nullable=False),
    Column("code_hash", Text, nullable=False),  # bcrypt
    Column("purpose", String(30), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("verified_at", String(40)),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("max_attempts", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Index("ix_otps_contact_purpose", "contact", "purpose"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("user_id", String(36), nullable=False, index=True),
    Column("tenant_id", String(36), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

_user_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("tenant_id", String(36), nullable=False),
    Column("session_token", String(128), nullable=False, unique=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("expires_at", String(40), nullable=False),
    Column("last_activity", String(40)),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", String(36), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dump_scopes(scopes: list[str]) -> str:
    return json.dumps(list(scopes))


def _load_scopes(raw: str | None) -> list[str]:
    return json.loads(raw) if raw else []


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IAMStore:
    """Repository for every identity entity.

    Usage:
        store = IAMStore("sqlite:///tenantgate.db")
        store.create_tenant(tenant)
        user = store.get_user_by_email("a@example.com", tenant.id)
        store.close()

    Lookups return None when the row does not exist. Conditional writes
    return True when a row changed.
    """

    def __init__(self, db_url: str = "sqlite:///tenantgate.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> None:
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _tenants.insert().values(
                    id=tenant.id,
                    company_name=tenant.company_name,
                    status=tenant.status.value,
                    subscription_plan=tenant.subscription_plan.value,
                    max_users=tenant.max_users,
                    current_users=tenant.current_users,
                    trial_expires_at=_iso(tenant.trial_expires_at),
                    subscription_expires_at=_iso(tenant.subscription_expires_at),
                    created_at=_iso(tenant.created_at or now),
                    updated_at=_iso(tenant.updated_at or now),
                )
            )
            conn.commit()

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def list_tenants(self) -> list[Tenant]:
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.company_name)).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def update_tenant(self, tenant: Tenant) -> bool:
        """Persist status, plan and limits.

        current_users is deliberately not written: it only moves through
        increment_user_count() / decrement_user_count().
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _tenants.update()
                .where(_tenants.c.id == tenant.id)
                .values(
                    company_name=tenant.company_name,
                    status=tenant.status.value,
                    subscription_plan=tenant.subscription_plan.value,
                    max_users=tenant.max_users,
                    trial_expires_at=_iso(tenant.trial_expires_at),
                    subscription_expires_at=_iso(tenant.subscription_expires_at),
                    updated_at=_iso(_now()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def increment_user_count(self, tenant_id: str) -> bool:
        """Atomically add one user if the tenant is below its ceiling."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tenants.update()
                .where((_tenants.c.id == tenant_id) & (_tenants.c.current_users < _tenants.c.max_users))
                .values(current_users=_tenants.c.current_users + 1, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    def decrement_user_count(self, tenant_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tenants.update()
                .where((_tenants.c.id == tenant_id) & (_tenants.c.current_users > 0))
                .values(current_users=_tenants.c.current_users - 1, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> None:
        """Insert a user.

        Raises sqlalchemy.exc.IntegrityError if (email, tenant_id) exists.
        """
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user.id,
                    tenant_id=user.tenant_id,
                    email=user.email,
                    name=user.name,
                    picture=user.picture,
                    status=user.status.value,
                    scopes=_dump_scopes(user.scopes),
                    oauth_provider=user.oauth_provider.value if user.oauth_provider else None,
                    oauth_provider_id=user.oauth_provider_id,
                    otp_enabled=1 if user.otp_enabled else 0,
                    email_verified=1 if user.email_verified else 0,
                    last_login_at=_iso(user.last_login_at),
                    created_at=_iso(user.created_at or now),
                    updated_at=_iso(user.updated_at or now),
                )
            )
            conn.commit()

    def get_user(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str, tenant_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.tenant_id == tenant_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users_by_email(self, email: str) -> list[User]:
        """Every account for an address, across tenants."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.email == email).order_by(_users.c.created_at)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def list_users(self, tenant_id: str) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.tenant_id == tenant_id).order_by(_users.c.email)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user: User) -> bool:
        """Persist every mutable field of a user. Returns False if it no longer exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(
                    name=user.name,
                    picture=user.picture,
                    status=user.status.value,
                    scopes=_dump_scopes(user.scopes),
                    oauth_provider=user.oauth_provider.value if user.oauth_provider else None,
                    oauth_provider_id=user.oauth_provider_id,
                    otp_enabled=1 if user.otp_enabled else 0,
                    email_verified=1 if user.email_verified else 0,
                    updated_at=_iso(_now()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_iso(_now())))
            conn.commit()

    def delete_user(self, user_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, invitation: Invitation) -> None:
        """Insert an invitation.

        Raises sqlalchemy.exc.IntegrityError if a PENDING invitation for the
        same (email, tenant_id) already exists.
        """
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _invitations.insert().values(
                    id=invitation.id,
                    tenant_id=invitation.tenant_id,
                    email=invitation.email,
                    token=invitation.token,
                    scopes=_dump_scopes(invitation.scopes),
                    status=invitation.status.value,
                    invited_by=invitation.invited_by,
                    expires_at=_iso(invitation.expires_at),
                    accepted_at=_iso(invitation.accepted_at),
                    accepted_by=invitation.accepted_by,
                    created_at=_iso(invitation.created_at or now),
                    updated_at=_iso(invitation.updated_at or now),
                )
            )
            conn.commit()

    def get_invitation(self, invitation_id: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.id == invitation_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def get_invitation_by_token(self, token: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(_invitations.select().where(_invitations.c.token == token)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def get_pending_invitation(self, email: str, tenant_id: str) -> Invitation | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _invitations.select().where(
                    (_invitations.c.email == email)
                    & (_invitations.c.tenant_id == tenant_id)
                    & (_invitations.c.status == InvitationStatus.PENDING.value)
                )
            ).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def list_invitations(self, tenant_id: str, status: InvitationStatus | None = None) -> list[Invitation]:
        query = _invitations.select().where(_invitations.c.tenant_id == tenant_id)
        if status is not None:
            query = query.where(_invitations.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_invitations.c.created_at.desc())).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def update_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        expected: InvitationStatus = InvitationStatus.PENDING,
    ) -> bool:
        """Move an invitation from `expected` to `status`. False if it was not in `expected`."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.update()
                .where((_invitations.c.id == invitation_id) & (_invitations.c.status == expected.value))
                .values(status=status.value, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount > 0

    def accept_invitation(self, invitation_id: str, user_id: str, accepted_at: datetime) -> bool:
        """Mark a PENDING invitation accepted. False if it was consumed concurrently."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.update()
                .where(
                    (_invitations.c.id == invitation_id)
                    & (_invitations.c.status == InvitationStatus.PENDING.value)
                )
                .values(
                    status=InvitationStatus.ACCEPTED.value,
                    accepted_at=_iso(accepted_at),
                    accepted_by=user_id,
                    updated_at=_iso(_now()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def expire_pending_invitations(self, now: datetime) -> int:
        """Mark every PENDING invitation past its expiry as EXPIRED."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _invitations.update()
                .where(
                    (_invitations.c.status == InvitationStatus.PENDING.value)
                    & (_invitations.c.expires_at < _iso(now))
                )
                .values(status=InvitationStatus.EXPIRED.value, updated_at=_iso(_now()))
            )
            conn.commit()
        return result.rowcount

    def delete_invitation(self, invitation_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_invitations.delete().where(_invitations.c.id == invitation_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> None:
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.insert().values(
                    id=api_key.id,
                    tenant_id=api_key.tenant_id,
                    user_id=api_key.user_id,
                    name=api_key.name,
                    description=api_key.description,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    scopes=_dump_scopes(api_key.scopes),
                    is_active=1 if api_key.is_active else 0,
                    expires_at=_iso(api_key.expires_at),
                    last_used_at=_iso(api_key.last_used_at),
                    created_at=_iso(api_key.created_at or now),
                    updated_at=_iso(api_key.updated_at or now),
                )
            )
            conn.commit()

    def get_api_key(self, key_id: str) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up a key (active or not) by its SHA-256 hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, tenant_id: str) -> list[ApiKey]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.tenant_id == tenant_id)
                .order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def update_api_key(self, api_key: ApiKey) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(_api_keys.c.id == api_key.id)
                .values(
                    name=api_key.name,
                    description=api_key.description,
                    scopes=_dump_scopes(api_key.scopes),
                    is_active=1 if api_key.is_active else 0,
                    expires_at=_iso(api_key.expires_at),
                    updated_at=_iso(_now()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_api_key_last_used(self, key_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_iso(_now())))
            conn.commit()

    def delete_api_key(self, key_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_api_keys.delete().where(_api_keys.c.id == key_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    def create_otp(self, otp: OTP) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _otps.insert().values(
                    id=otp.id,
                    contact=otp.contact,
                    code_hash=otp.code_hash,
                    purpose=otp.purpose.value,
                    expires_at=_iso(otp.expires_at),
                    verified_at=_iso(otp.verified_at),
                    attempts=otp.attempts,
                    max_attempts=otp.max_attempts,
                    created_at=_iso(otp.created_at or _now()),
                )
            )
            conn.commit()

    def get_otp(self, otp_id: str) -> OTP | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otps.select().where(_otps.c.id == otp_id)).fetchone()
        return _row_to_otp(row) if row is not None else None

    def get_latest_otp(self, contact: str, purpose: OTPPurpose) -> OTP | None:
        """Most recently issued code for contact+purpose, whatever its state."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _otps.select()
                .where((_otps.c.contact == contact) & (_otps.c.purpose == purpose.value))
                .order_by(_otps.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def increment_otp_attempts(self, otp_id: str) -> bool:
        """Consume one attempt. False when the code is verified or out of attempts."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otps.update()
                .where(
                    (_otps.c.id == otp_id)
                    & (_otps.c.attempts < _otps.c.max_attempts)
                    & (_otps.c.verified_at.is_(None))
                )
                .values(attempts=_otps.c.attempts + 1)
            )
            conn.commit()
        return result.rowcount > 0

    def mark_otp_verified(self, otp_id: str, verified_at: datetime) -> bool:
        """Set verified_at once. False if another request already did."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otps.update()
                .where((_otps.c.id == otp_id) & (_otps.c.verified_at.is_(None)))
                .values(verified_at=_iso(verified_at))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_expired_otps(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_otps.delete().where(_otps.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=token.id,
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    tenant_id=token.tenant_id,
                    expires_at=_iso(token.expires_at),
                    is_revoked=1 if token.is_revoked else 0,
                    created_at=_iso(token.created_at or _now()),
                )
            )
            conn.commit()

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount

    def delete_stale_refresh_tokens(self, now: datetime) -> int:
        """Delete refresh tokens that are expired or revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(_refresh_tokens.c.expires_at < _iso(now), _refresh_tokens.c.is_revoked == 1)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> None:
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _user_sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    tenant_id=session.tenant_id,
                    session_token=session.session_token,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    expires_at=_iso(session.expires_at),
                    last_activity=_iso(session.last_activity or now),
                    is_revoked=1 if session.is_revoked else 0,
                    created_at=_iso(session.created_at or now),
                )
            )
            conn.commit()

    def list_sessions(self, user_id: str) -> list[UserSession]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_sessions.select()
                .where(_user_sessions.c.user_id == user_id)
                .order_by(_user_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke_user_sessions(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_sessions.update()
                .where((_user_sessions.c.user_id == user_id) & (_user_sessions.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount

    def delete_stale_sessions(self, now: datetime) -> int:
        """Delete sessions that are expired or revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_sessions.delete().where(
                    or_(_user_sessions.c.expires_at < _iso(now), _user_sessions.c.is_revoked == 1)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_password_reset_token(self, token: PasswordResetToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _password_reset_tokens.insert().values(
                    id=token.id,
                    token=token.token,
                    user_id=token.user_id,
                    expires_at=_iso(token.expires_at),
                    is_used=1 if token.is_used else 0,
                    created_at=_iso(token.created_at or _now()),
                )
            )
            conn.commit()

    def get_password_reset_token(self, token: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.token == token)
            ).fetchone()
        return _row_to_password_reset_token(row) if row is not None else None

    def delete_stale_password_reset_tokens(self, now: datetime) -> int:
        """Delete reset tokens that are expired or already used."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.delete().where(
                    or_(
                        _password_reset_tokens.c.expires_at < _iso(now),
                        _password_reset_tokens.c.is_used == 1,
                    )
                )
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    m = row._mapping
    return Tenant(
        id=m["id"],
        company_name=m["company_name"],
        status=TenantStatus(m["status"]),
        subscription_plan=SubscriptionPlan(m["subscription_plan"]),
        max_users=m["max_users"],
        current_users=m["current_users"],
        trial_expires_at=_parse(m["trial_expires_at"]),
        subscription_expires_at=_parse(m["subscription_expires_at"]),
        created_at=_parse(m["created_at"]),
        updated_at=_parse(m["updated_at"]),
    )


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        tenant_id=m["tenant_id"],
        email=m["email"],
        name=m["name"],
        picture=m["picture"],
        status=UserStatus(m["status"]),
        scopes=_load_scopes(m["scopes"]),
        oauth_provider=OAuthProvider(m["oauth_provider"]) if m["oauth_provider"] else None,
        oauth_provider_id=m["oauth_provider_id"],
        otp_enabled=bool(m["otp_enabled"]),
        email_verified=bool(m["email_verified"]),
        last_login_at=_parse(m["last_login_at"]),
        created_at=_parse(m["created_at"]),
        updated_at=_parse(m["updated_at"]),
    )


def _row_to_invitation(row) -> Invitation:
    m = row._mapping
    return Invitation(
        id=m["id"],
        tenant_id=m["tenant_id"],
        email=m["email"],
        token=m["token"],
        scopes=_load_scopes(m["scopes"]),
        status=InvitationStatus(m["status"]),
        invited_by=m["invited_by"],
        expires_at=_parse(m["expires_at"]),
        accepted_at=_parse(m["accepted_at"]),
        accepted_by=m["accepted_by"],
        created_at=_parse(m["created_at"]),
        updated_at=_parse(m["updated_at"]),
    )


def _row_to_api_key(row) -> ApiKey:
    m = row._mapping
    return ApiKey(
        id=m["id"],
        tenant_id=m["tenant_id"],
        user_id=m["user_id"],
        name=m["name"],
        description=m["description"] or "",
        key_hash=m["key_hash"],
        key_prefix=m["key_prefix"],
        scopes=_load_scopes(m["scopes"]),
        is_active=bool(m["is_active"]),
        expires_at=_parse(m["expires_at"]),
        last_used_at=_parse(m["last_used_at"]),
        created_at=_parse(m["created_at"]),
        updated_at=_parse(m["updated_at"]),
    )


def _row_to_otp(row) -> OTP:
    m = row._mapping
    return OTP(
        id=m["id"],
        contact=m["contact"],
        code_hash=m["code_hash"],
        purpose=OTPPurpose(m["purpose"]),
        expires_at=_parse(m["expires_at"]),
        verified_at=_parse(m["verified_at"]),
        attempts=m["attempts"],
        max_attempts=m["max_attempts"],
        created_at=_parse(m["created_at"]),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    m = row._mapping
    return RefreshToken(
        id=m["id"],
        token_hash=m["token_hash"],
        user_id=m["user_id"],
        tenant_id=m["tenant_id"],
        expires_at=_parse(m["expires_at"]),
        is_revoked=bool(m["is_revoked"]),
        created_at=_parse(m["created_at"]),
    )


def _row_to_session(row) -> UserSession:
    m = row._mapping
    return UserSession(
        id=m["id"],
        user_id=m["user_id"],
        tenant_id=m["tenant_id"],
        session_token=m["session_token"],
        ip_address=m["ip_address"],
        user_agent=m["user_agent"],
        expires_at=_parse(m["expires_at"]),
        last_activity=_parse(m["last_activity"]),
        is_revoked=bool(m["is_revoked"]),
        created_at=_parse(m["created_at"]),
    )


def _row_to_password_reset_token(row) -> PasswordResetToken:
    m = row._mapping
    return PasswordResetToken(
        id=m["id"],
        token=m["token"],
        user_id=m["user_id"],
        expires_at=_parse(m["expires_at"]),
        is_used=bool(m["is_used"]),
        created_at=_parse(m["created_at"]),
    )
