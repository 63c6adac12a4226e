from __future__ import annotations

import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from edutenant.config import Settings
from edutenant.logging import get_logger
from edutenant.service.email import notify
from edutenant.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from edutenant.service.passwords import PasswordHasher, validate_strength
from edutenant.service.pipeline import RequestContext
from edutenant.service.roles import can_invite
from edutenant.storage.errors import ConstraintViolation
from edutenant.storage.keys import invite_kind, invite_kinds, namespace_key
from edutenant.storage.models import (
    INVITABLE_ROLES,
    Account,
    Invitation,
    InvitationStatus,
    Role,
    utcnow,
)

logger = get_logger(__name__)

HEX_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")
_INVALID_INVITE = "invalid or expired invitation"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def clean_extra(extra: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Drop empty or whitespace-only role fields and trim the rest."""
    cleaned: Dict[str, str] = {}
    for key, value in (extra or {}).items():
        if value is None:
            continue
        text = str(value).strip()
        if text:
            cleaned[key] = text
    return cleaned


class InvitationManager:
    """Issues, resends, cancels and redeems single-use invitation tokens.

    Each pending invitation lives twice: as a durable ``Invitation`` record
    and as an ``invite_<role>:<token>`` entry in the credential store with a
    24 hour TTL. Redeeming spends the credential-store entry with an atomic
    ``pop``; the caller that wins the pop is the only one that creates an
    account.
    """

    def __init__(
        self,
        store: Any,
        cache: Any,
        hasher: PasswordHasher,
        notifier: Any,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings

    @property
    def ttl_seconds(self) -> int:
        return self.settings.invite_token_ttl_seconds

    def target_tenant(self, actor: RequestContext, requested: Optional[str]) -> str:
        """Tenant an invite goes to: the caller's own, or the requested one for ADMIN."""
        if not actor.is_admin:
            return actor.tenant_id  # type: ignore[return-value]
        if not requested:
            raise ValidationError("tenant_id is required", detail={"field": "tenant_id"})
        return requested

    @staticmethod
    def _payload(invitation: Invitation) -> Dict[str, Any]:
        return {
            "email": invitation.email,
            "tenant_id": invitation.tenant_id,
            "name": invitation.name,
            "role": invitation.role.value,
            "extra": dict(invitation.extra),
        }

    async def _send(self, invitation: Invitation, tenant_name: str) -> None:
        await notify(
            self.notifier,
            invitation.email,
            invite_kind(invitation.role).value,
            {
                "name": invitation.name,
                "tenant_name": tenant_name,
                "role": invitation.role.value,
                "token": invitation.token,
            },
        )

    def _tenant_name(self, tenant_id: str) -> str:
        tenant = self.store.get_tenant(tenant_id)
        return tenant.name if tenant else ""

    async def invite(
        self,
        tenant_id: str,
        email: str,
        name: str,
        role: Role,
        extra: Optional[Dict[str, Any]] = None,
        *,
        actor: Optional[RequestContext] = None,
    ) -> Invitation:
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"}) from None
        if role not in INVITABLE_ROLES:
            raise ValidationError("role cannot be invited", detail={"field": "role"})
        if actor is not None and actor.role is not None and not can_invite(actor.role, role):
            raise ForbiddenError("not allowed to invite this role")

        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        if not tenant.active:
            raise InvalidStateError("tenant is inactive")

        email = normalize_email(email)
        name = (name or "").strip()
        if not email or not name:
            raise ValidationError("email and name are required")
        if self.store.find_account_by_email_in_tenant(tenant_id, email):
            raise ConflictError("email already registered in this tenant", detail={"field": "email"})

        token = secrets.token_hex(32)
        key = namespace_key(invite_kind(role), token)
        extra = clean_extra(extra)
        await self.cache.set(
            key,
            {
                "email": email,
                "tenant_id": tenant_id,
                "name": name,
                "role": role.value,
                "extra": extra,
            },
            self.ttl_seconds,
        )
        try:
            invitation = self.store.create_invitation(
                tenant_id=tenant_id,
                email=email,
                name=name,
                role=role,
                token=token,
                expires_at=utcnow() + timedelta(seconds=self.ttl_seconds),
                created_by=actor.subject_id if actor else None,
                extra=extra,
            )
        except Exception:
            await self.cache.delete(key)
            raise
        logger.info(
            "invite_created",
            invitation_id=invitation.id,
            tenant_id=tenant_id,
            invited_role=role.value,
        )
        await self._send(invitation, tenant.name)
        return invitation

    def _load_scoped(self, invitation_id: str, actor: RequestContext) -> Invitation:
        invitation = self.store.get_invitation(invitation_id, actor.scope_tenant)
        # Roles the actor could not invite are outside its scope and read as missing
        if invitation is None or not can_invite(actor.role, invitation.role):
            raise NotFoundError("invitation not found")
        return invitation

    async def resend(self, invitation_id: str, actor: RequestContext) -> Invitation:
        """Supersede an invitation with a fresh token and TTL.

        Allowed for every state except ``accepted``; a cancelled or expired
        invitation can be revived this way.
        """
        old = self._load_scoped(invitation_id, actor)
        if old.status == InvitationStatus.ACCEPTED:
            raise InvalidStateError("invitation already accepted")

        token = secrets.token_hex(32)
        kind = invite_kind(old.role)
        new_key = namespace_key(kind, token)
        await self.cache.set(new_key, self._payload(old), self.ttl_seconds)
        await self.cache.delete(namespace_key(kind, old.token))
        try:
            fresh = self.store.supersede_invitation(
                old.id,
                token=token,
                expires_at=utcnow() + timedelta(seconds=self.ttl_seconds),
                created_by=actor.subject_id,
            )
        except Exception:
            await self.cache.delete(new_key)
            raise
        logger.info(
            "invite_resent",
            invitation_id=fresh.id,
            superseded_id=old.id,
            tenant_id=old.tenant_id,
        )
        await self._send(fresh, self._tenant_name(fresh.tenant_id))
        return fresh

    async def cancel(self, invitation_id: str, actor: RequestContext) -> Invitation:
        invitation = self._load_scoped(invitation_id, actor)
        if invitation.status == InvitationStatus.ACCEPTED:
            raise InvalidStateError("invitation already accepted")
        await self.cache.delete(namespace_key(invite_kind(invitation.role), invitation.token))
        if invitation.status != InvitationStatus.CANCELLED:
            invitation = self.store.set_invitation_status(
                invitation.id, InvitationStatus.CANCELLED
            ) or invitation
            logger.info("invite_cancelled", invitation_id=invitation.id)
        return invitation

    async def _lookup(self, token: str) -> Tuple[str, Dict[str, Any]]:
        if not isinstance(token, str) or not HEX_TOKEN_RE.match(token):
            raise AuthenticationError(_INVALID_INVITE)
        for kind in invite_kinds():
            key = namespace_key(kind, token)
            payload = await self.cache.get(key)
            if payload:
                return key, payload
        raise AuthenticationError(_INVALID_INVITE)

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """Preview an invitation without spending it."""
        _, payload = await self._lookup(token)
        return {
            "email": payload.get("email"),
            "name": payload.get("name"),
            "role": payload.get("role"),
            "tenant_id": payload.get("tenant_id"),
            "tenant_name": self._tenant_name(payload.get("tenant_id", "")),
        }

    async def _restore(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        if ttl > 0:
            await self.cache.set(key, payload, ttl)

    async def accept(self, token: str, secret: str) -> Account:
        key, payload = await self._lookup(token)
        validate_strength(secret)

        tenant_id = payload.get("tenant_id")
        email = normalize_email(payload.get("email", ""))
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError(_INVALID_INVITE) from None
        tenant = self.store.get_tenant(tenant_id) if tenant_id else None
        if tenant is None or not tenant.active:
            raise InvalidStateError("tenant is inactive")
        if self.store.find_account_by_email_in_tenant(tenant_id, email):
            raise ConflictError("email already registered in this tenant", detail={"field": "email"})
        record = self.store.get_invitation_by_token(token)
        if record is not None and record.status in (
            InvitationStatus.CANCELLED,
            InvitationStatus.ACCEPTED,
        ):
            raise InvalidStateError(f"invitation {record.status.value}")

        remaining = await self.cache.ttl(key)
        claimed = await self.cache.pop(key)
        if claimed is None:
            # Another request spent the token between lookup and claim
            raise AuthenticationError(_INVALID_INVITE)

        secret_hash = self.hasher.hash(secret)
        try:
            account = self.store.create_account_with_role(
                tenant_id=tenant_id,
                email=email,
                secret_hash=secret_hash,
                name=claimed.get("name") or payload.get("name", ""),
                role=role,
                profile=clean_extra(claimed.get("extra")),
                invitation_id=record.id if record is not None else None,
            )
        except ConstraintViolation as exc:
            if exc.field == "invitation":
                # Cancelled or accepted while this request held the token
                raise InvalidStateError("invitation is no longer pending") from exc
            await self._restore(key, claimed, remaining)
            raise ConflictError(
                "email already registered in this tenant", detail=exc.detail
            ) from exc
        except Exception:
            await self._restore(key, claimed, remaining)
            raise

        logger.info(
            "invite_accepted",
            account_id=account.id,
            tenant_id=tenant_id,
            invited_role=role.value,
        )
        return account

    def list_invitations(
        self,
        actor: RequestContext,
        *,
        status: Optional[InvitationStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Invitation], int]:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        now = utcnow()
        rows, total = self.store.list_invitations(
            actor.scope_tenant,
            status=InvitationStatus(status) if status else None,
            now=now,
            offset=(page - 1) * limit,
            limit=limit,
        )
        for row in rows:
            row.status = row.effective_status(now)
        return rows, total
