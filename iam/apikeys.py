"""
iam/apikeys.py -- API key management and validation.

Keys belong to a tenant and optionally to a user. The full key is returned
once from create_api_key(); afterwards only its SHA-256 hash and a display
prefix exist. Two environments share one format:
  live  -> "{api_key_live_prefix}_{hex}"
  test  -> "{api_key_test_prefix}_{hex}"

validate_api_key() distinguishes unknown (401), revoked/inactive (401) and
expired (401) keys by error code; all three are authentication failures.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from core.config import Settings
from iam.credentials import generate_api_key, hash_api_key
from iam.errors import AuthorizationError, NotFoundError, ValidationError
from iam.models import ApiKey
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.users import resolve_scopes

logger = logging.getLogger("tenantgate.iam.apikeys")

_ENVIRONMENTS = ("live", "test")


def is_expired(api_key: ApiKey, now: datetime | None = None) -> bool:
    return api_key.expires_at is not None and (now or datetime.now(timezone.utc)) >= api_key.expires_at


def is_usable(api_key: ApiKey) -> bool:
    return api_key.is_active and not is_expired(api_key)


@dataclass(frozen=True)
class CreatedApiKey:
    """A freshly created key plus its one-time plaintext."""

    api_key: ApiKey
    key: str


class ApiKeyService:
    def __init__(self, store: IAMStore, tenants: TenantService, settings: Settings) -> None:
        self.store = store
        self.tenants = tenants
        self.settings = settings

    def create_api_key(
        self,
        tenant_id: str,
        name: str,
        scopes: list[str],
        user_id: str | None = None,
        description: str = "",
        expires_at: datetime | None = None,
        environment: str = "live",
    ) -> CreatedApiKey:
        self.tenants.require_active(tenant_id)
        if environment not in _ENVIRONMENTS:
            raise ValidationError("Environment must be 'live' or 'test'.", "invalid_environment")
        name = name.strip()
        if not name:
            raise ValidationError("API key name is required.", "invalid_name")
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise ValidationError("Expiry must be in the future.", "invalid_expiry")
        granted = resolve_scopes(scopes)

        prefix = self.settings.api_key_live_prefix if environment == "live" else self.settings.api_key_test_prefix
        full_key, display_prefix = generate_api_key(prefix, self.settings.api_key_bytes)
        now = datetime.now(timezone.utc)
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            name=name,
            description=description,
            key_hash=hash_api_key(full_key),
            key_prefix=display_prefix,
            scopes=granted,
            is_active=True,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self.store.create_api_key(api_key)
        logger.info(
            "API key created",
            extra={"event": "api_key_created", "api_key_id": api_key.id, "tenant_id": tenant_id},
        )
        return CreatedApiKey(api_key=api_key, key=full_key)

    def list_api_keys(self, tenant_id: str) -> list[ApiKey]:
        return self.store.list_api_keys(tenant_id)

    def get_api_key(self, key_id: str, tenant_id: str) -> ApiKey:
        api_key = self.store.get_api_key(key_id)
        if api_key is None or api_key.tenant_id != tenant_id:
            raise NotFoundError("API key not found.", "api_key_not_found")
        return api_key

    def update_api_key(
        self,
        key_id: str,
        tenant_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        scopes: list[str] | None = None,
        is_active: bool | None = None,
    ) -> ApiKey:
        api_key = self.get_api_key(key_id, tenant_id)
        changes: dict = {"updated_at": datetime.now(timezone.utc)}
        if name is not None:
            if not name.strip():
                raise ValidationError("API key name is required.", "invalid_name")
            changes["name"] = name.strip()
        if description is not None:
            changes["description"] = description
        if scopes is not None:
            changes["scopes"] = resolve_scopes(scopes)
        if is_active is not None:
            changes["is_active"] = is_active
        updated = replace(api_key, **changes)
        self.store.update_api_key(updated)
        return updated

    def revoke_api_key(self, key_id: str, tenant_id: str) -> ApiKey:
        revoked = self.update_api_key(key_id, tenant_id, is_active=False)
        logger.info("API key revoked", extra={"event": "api_key_revoked", "api_key_id": key_id})
        return revoked

    def delete_api_key(self, key_id: str, tenant_id: str) -> None:
        self.get_api_key(key_id, tenant_id)
        self.store.delete_api_key(key_id)
        logger.info("API key deleted", extra={"event": "api_key_deleted", "api_key_id": key_id})

    def validate_api_key(self, key: str) -> ApiKey:
        """Resolve a presented key to its record, stamping last use.

        Raises AuthorizationError with code api_key_invalid, api_key_revoked
        or api_key_expired.
        """
        api_key = self.store.get_api_key_by_hash(hash_api_key(key))
        if api_key is None:
            raise AuthorizationError("Invalid API key.", "api_key_invalid")
        if not api_key.is_active:
            raise AuthorizationError("API key has been revoked.", "api_key_revoked")
        if is_expired(api_key):
            raise AuthorizationError("API key has expired.", "api_key_expired")
        self.store.update_api_key_last_used(api_key.id)
        return api_key
