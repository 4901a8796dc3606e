"""
iam/invitations.py -- Invitation rules and the invitation service.

An invitation is the only way into a tenant: OAuth registration and
passwordless signup both require a PENDING, unexpired invitation whose email
matches the registering identity. Accepting it is one-shot.

Lifecycle:
  PENDING -> ACCEPTED   accept()           (account created or linked)
  PENDING -> REVOKED    revoke()           (admin action)
  PENDING -> EXPIRED    mark_as_expired()  (reaper / cleanup_expired)

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from core.config import Settings
from iam import scopes as scope_model
from iam.credentials import generate_token
from iam.errors import AuthorizationError, BusinessRuleError, ConflictError, NotFoundError, ValidationError
from iam.models import Invitation, InvitationStatus, Tenant
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.users import is_admin, normalize_email, resolve_scopes

logger = logging.getLogger("tenantgate.iam.invitations")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_expired(invitation: Invitation, now: datetime | None = None) -> bool:
    return (now or _now()) >= invitation.expires_at


def can_be_accepted(invitation: Invitation, now: datetime | None = None) -> bool:
    return invitation.status == InvitationStatus.PENDING and not is_expired(invitation, now)


def unacceptable_reason(invitation: Invitation, now: datetime | None = None) -> BusinessRuleError | None:
    """The business error that stops `invitation` being accepted, or None.

    Status is checked before expiry: an accepted invitation past its expiry
    still reports "already accepted".
    """
    if invitation.status == InvitationStatus.ACCEPTED:
        return BusinessRuleError(
            "Invitation has already been accepted.", "invitation_already_accepted", status_code=409
        )
    if invitation.status == InvitationStatus.REVOKED:
        return BusinessRuleError("Invitation has been revoked.", "invitation_revoked", status_code=410)
    if invitation.status == InvitationStatus.EXPIRED or is_expired(invitation, now):
        return BusinessRuleError("Invitation has expired.", "invitation_expired", status_code=410)
    return None


def accept(invitation: Invitation, user_id: str) -> Invitation:
    error = unacceptable_reason(invitation)
    if error is not None:
        raise error
    now = _now()
    return replace(
        invitation,
        status=InvitationStatus.ACCEPTED,
        accepted_at=now,
        accepted_by=user_id,
        updated_at=now,
    )


def revoke(invitation: Invitation) -> Invitation:
    if invitation.status == InvitationStatus.ACCEPTED:
        raise ConflictError("Invitation has already been accepted.", "invitation_already_accepted")
    if invitation.status == InvitationStatus.REVOKED:
        raise ConflictError("Invitation has already been revoked.", "invitation_already_revoked")
    return replace(invitation, status=InvitationStatus.REVOKED, updated_at=_now())


def mark_as_expired(invitation: Invitation) -> Invitation:
    """PENDING and past expiry becomes EXPIRED; anything else is returned unchanged."""
    if invitation.status == InvitationStatus.PENDING and is_expired(invitation):
        return replace(invitation, status=InvitationStatus.EXPIRED, updated_at=_now())
    return invitation


@dataclass(frozen=True)
class TokenValidation:
    """Success-shaped answer to "is this invitation token usable?"."""

    valid: bool
    message: str
    invitation: Invitation | None = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class InvitationService:
    def __init__(self, store: IAMStore, tenants: TenantService, settings: Settings) -> None:
        self.store = store
        self.tenants = tenants
        self.settings = settings

    def create_invitation(
        self,
        tenant_id: str,
        email: str,
        invited_by: str,
        scopes: list[str] | None = None,
        template: str | None = None,
    ) -> Invitation:
        """Invite an address into a tenant.

        The inviter must belong to the tenant and be an admin or hold
        "users:invite". Scopes come from the explicit list, a group template,
        or the default "viewer" group, and must all be held by the inviter.
        """
        tenant = self.tenants.require_active(tenant_id)
        inviter = self.store.get_user(invited_by)
        if inviter is None or inviter.tenant_id != tenant.id:
            raise NotFoundError("Inviting user not found.", "inviter_not_found")
        if not (is_admin(inviter) or scope_model.has_scope(inviter.scopes, "users:invite")):
            raise AuthorizationError(
                "Insufficient permissions to invite users.",
                "insufficient_permissions",
                status_code=403,
                details={"required_scope": "users:invite"},
            )
        granted = resolve_scopes(scopes, template)
        excess = [s for s in granted if not scope_model.has_scope(inviter.scopes, s)]
        if excess:
            raise AuthorizationError(
                "Cannot grant scopes you do not hold.",
                "scope_escalation",
                status_code=403,
                details={"scopes": excess},
            )

        email = normalize_email(email)
        if self.store.get_user_by_email(email, tenant.id) is not None:
            raise ConflictError("User already exists in this tenant.", "user_already_exists")
        if self.store.get_pending_invitation(email, tenant.id) is not None:
            raise ConflictError("A pending invitation already exists for this email.", "invitation_exists")

        now = _now()
        invitation = Invitation(
            id=str(uuid.uuid4()),
            tenant_id=tenant.id,
            email=email,
            token=generate_token(self.settings.invitation_token_bytes),
            scopes=granted,
            status=InvitationStatus.PENDING,
            invited_by=inviter.id,
            expires_at=now + timedelta(days=self.settings.invitation_expire_days),
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.create_invitation(invitation)
        except IntegrityError as exc:
            raise ConflictError("A pending invitation already exists for this email.", "invitation_exists") from exc
        logger.info(
            "Invitation created",
            extra={"event": "invitation_created", "invitation_id": invitation.id, "tenant_id": tenant.id},
        )
        return invitation

    def get_invitation(self, invitation_id: str, tenant_id: str) -> Invitation:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None or invitation.tenant_id != tenant_id:
            raise NotFoundError("Invitation not found.", "invitation_not_found")
        return invitation

    def get_by_token(self, token: str) -> Invitation:
        invitation = self.store.get_invitation_by_token(token)
        if invitation is None:
            raise NotFoundError("Invitation not found.", "invitation_not_found")
        return invitation

    def validate_token(self, token: str) -> TokenValidation:
        invitation = self.store.get_invitation_by_token(token)
        if invitation is None:
            return TokenValidation(valid=False, message="Invitation not found")
        if can_be_accepted(invitation):
            return TokenValidation(valid=True, message="Invitation is valid", invitation=invitation)
        if invitation.status == InvitationStatus.ACCEPTED:
            message = "Invitation has already been accepted"
        elif invitation.status == InvitationStatus.REVOKED:
            message = "Invitation has been revoked"
        else:
            message = "Invitation has expired"
        return TokenValidation(valid=False, message=message, invitation=invitation)

    def require_acceptable(self, token: str, email: str) -> Invitation:
        """Return the invitation behind `token` if `email` may use it now.

        Used by both registration flows before any account is touched.
        """
        invitation = self.store.get_invitation_by_token(token)
        if invitation is None:
            raise BusinessRuleError("Invalid or expired invitation", "invitation_invalid")
        error = unacceptable_reason(invitation)
        if error is not None:
            raise error
        if invitation.email != normalize_email(email):
            raise ValidationError("Email does not match invitation", "invitation_email_mismatch")
        return invitation

    def consume(self, invitation: Invitation, user_id: str) -> Invitation:
        """Accept an invitation exactly once.

        The store update is conditional on PENDING, so a concurrent consumer
        loses with a conflict instead of accepting twice.
        """
        accepted = accept(invitation, user_id)
        if not self.store.accept_invitation(invitation.id, user_id, accepted.accepted_at):
            raise ConflictError("Invitation has already been used.", "invitation_already_accepted")
        logger.info(
            "Invitation accepted",
            extra={"event": "invitation_accepted", "invitation_id": invitation.id, "user_id": user_id},
        )
        return accepted

    def list_invitations(self, tenant_id: str) -> list[Invitation]:
        self.tenants.get_tenant(tenant_id)
        return self.store.list_invitations(tenant_id)

    def list_pending(self, tenant_id: str) -> list[Invitation]:
        self.tenants.get_tenant(tenant_id)
        return self.store.list_invitations(tenant_id, InvitationStatus.PENDING)

    def revoke_invitation(self, invitation_id: str, tenant_id: str) -> Invitation:
        invitation = self.get_invitation(invitation_id, tenant_id)
        revoked = revoke(invitation)
        if not self.store.update_invitation_status(invitation.id, InvitationStatus.REVOKED, invitation.status):
            raise ConflictError("Invitation changed concurrently.", "invitation_conflict")
        logger.info("Invitation revoked", extra={"event": "invitation_revoked", "invitation_id": invitation.id})
        return revoked

    def delete_invitation(self, invitation_id: str, tenant_id: str) -> None:
        invitation = self.get_invitation(invitation_id, tenant_id)
        if invitation.status == InvitationStatus.ACCEPTED:
            raise ConflictError("Accepted invitations cannot be deleted.", "invitation_already_accepted")
        self.store.delete_invitation(invitation.id)

    def cleanup_expired(self) -> int:
        """Mark every overdue PENDING invitation EXPIRED. Returns the count."""
        count = self.store.expire_pending_invitations(_now())
        if count:
            logger.info("Expired %d invitations", count)
        return count

    @staticmethod
    def available_templates() -> list[str]:
        return scope_model.get_available_groups()

    def tenant_for(self, invitation: Invitation) -> Tenant:
        return self.tenants.get_tenant(invitation.tenant_id)
