from __future__ import annotations

import secrets
from typing import Any, List, Optional, Tuple

from edutenant.config import Settings
from edutenant.logging import get_logger
from edutenant.service.email import notify
from edutenant.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from edutenant.service.invitations import HEX_TOKEN_RE, normalize_email
from edutenant.service.passwords import PasswordHasher, validate_strength
from edutenant.service.pipeline import RequestContext
from edutenant.service.roles import authorize_management, manageable_roles
from edutenant.service.tokens import TokenIssuer, TokenPair
from edutenant.storage.errors import ConstraintViolation
from edutenant.storage.keys import KeyKind, namespace_key
from edutenant.storage.models import Account, Role

logger = get_logger(__name__)

_INVALID_LOGIN = "invalid credentials"
_INVALID_RESET = "invalid or expired reset token"


class AccountService:
    """Account-facing operations built on the record store and token issuer."""

    def __init__(
        self,
        store: Any,
        cache: Any,
        tokens: TokenIssuer,
        hasher: PasswordHasher,
        notifier: Any,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings
        # Verified against when no account matches so misses cost the same as wrong passwords
        self._dummy_hash = hasher.hash(secrets.token_urlsafe(16))

    # sessions
    def _match_credentials(
        self, email: str, secret: str, tenant_id: Optional[str]
    ) -> Optional[Account]:
        if tenant_id:
            found = self.store.find_account_by_email_in_tenant(tenant_id, email)
            candidates = [found] if found else []
        else:
            candidates = self.store.find_accounts_by_email(email)
        if not candidates:
            self.hasher.verify(secret, self._dummy_hash)
            return None
        for account in candidates:
            if self.hasher.verify(secret, account.secret_hash):
                return account
        return None

    async def login(
        self, email: str, secret: str, *, tenant_id: Optional[str] = None
    ) -> Tuple[Account, TokenPair]:
        email = normalize_email(email)
        account = self._match_credentials(email, secret or "", tenant_id)
        if account is None:
            logger.info("login_failed", reason="bad_credentials")
            raise AuthenticationError(_INVALID_LOGIN)
        if not account.is_active:
            logger.info("login_failed", reason="deactivated", subject_id=account.id)
            raise AuthenticationError(_INVALID_LOGIN)
        if account.role != Role.ADMIN:
            tenant = self.store.get_tenant(account.tenant_id)
            if tenant is None or not tenant.active:
                logger.info("login_failed", reason="tenant_inactive", subject_id=account.id)
                raise AuthenticationError(_INVALID_LOGIN)
        if self.hasher.needs_rehash(account.secret_hash):
            account = self.store.set_secret_hash(account.id, self.hasher.hash(secret)) or account
            logger.info("password_rehashed", subject_id=account.id)
        pair = await self.tokens.issue_tokens(account)
        logger.info("login_succeeded", subject_id=account.id, tenant_id=account.tenant_id)
        return account, pair

    async def refresh(self, refresh_token: str) -> Tuple[Account, TokenPair]:
        return await self.tokens.rotate_tokens(refresh_token)

    async def logout(self, refresh_token: str) -> None:
        await self.tokens.logout(refresh_token)

    def me(self, ctx: RequestContext) -> Account:
        account = self.store.find_account_by_id(ctx.subject_id, ctx.tenant_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    # management
    def _load_subject(self, account_id: str, actor: RequestContext) -> Account:
        account = self.store.find_account_by_id(account_id, actor.scope_tenant)
        if account is None:
            raise NotFoundError("account not found")
        return account

    def _authorize(self, actor: RequestContext, subject: Account) -> None:
        authorize_management(
            actor.role,
            actor.tenant_id,
            actor.subject_id,
            subject.role,
            subject.tenant_id,
            subject.id,
        )

    def update_account(
        self,
        account_id: str,
        actor: RequestContext,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("name cannot be empty", detail={"field": "name"})
        if email is not None:
            email = normalize_email(email)
            if not email:
                raise ValidationError("email cannot be empty", detail={"field": "email"})
        if name is None and email is None:
            raise ValidationError("nothing to update")

        subject = self._load_subject(account_id, actor)
        self._authorize(actor, subject)
        if email is not None and email != subject.email:
            clash = self.store.find_account_by_email_in_tenant(subject.tenant_id, email)
            if clash and clash.id != subject.id:
                raise ConflictError("email already registered in this tenant", detail={"field": "email"})
        try:
            updated = self.store.update_account(
                subject.id, subject.tenant_id, name=name, email=email
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered in this tenant", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("account not found")
        logger.info("account_updated", account_id=subject.id, actor_id=actor.subject_id)
        return updated

    async def deactivate_account(self, account_id: str, actor: RequestContext) -> Account:
        subject = self._load_subject(account_id, actor)
        self._authorize(actor, subject)
        if not subject.is_active:
            raise ConflictError("account already deactivated")
        updated = self.store.soft_deactivate(subject.id, subject.tenant_id)
        if updated is None:
            raise NotFoundError("account not found")
        # Outstanding refresh tokens would be refused at rotation anyway; drop them now
        await self.tokens.revoke_all_for_subject(subject.id)
        logger.info("account_deactivated", account_id=subject.id, actor_id=actor.subject_id)
        return updated

    def reactivate_account(self, account_id: str, actor: RequestContext) -> Account:
        subject = self._load_subject(account_id, actor)
        self._authorize(actor, subject)
        if subject.is_active:
            raise ConflictError("account already active")
        updated = self.store.reactivate(subject.id, subject.tenant_id)
        if updated is None:
            raise NotFoundError("account not found")
        logger.info("account_reactivated", account_id=subject.id, actor_id=actor.subject_id)
        return updated

    def list_accounts(
        self,
        actor: RequestContext,
        *,
        search: Optional[str] = None,
        include_inactive: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        return self.store.list_accounts(
            actor.scope_tenant,
            roles=manageable_roles(actor.role),
            search=(search or "").strip() or None,
            include_inactive=include_inactive,
            offset=(page - 1) * limit,
            limit=limit,
        )

    def create_account(
        self,
        *,
        email: str,
        name: str,
        role: Role,
        secret: str,
        tenant_id: Optional[str] = None,
        profile: Optional[dict] = None,
    ) -> Account:
        """Direct creation by a platform ADMIN, bypassing the invitation flow."""
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("unknown role", detail={"field": "role"}) from None
        if role == Role.ADMIN:
            tenant_id = None
        else:
            if not tenant_id:
                raise ValidationError("tenant_id is required", detail={"field": "tenant_id"})
            if self.store.get_tenant(tenant_id) is None:
                raise NotFoundError("tenant not found")
        email = normalize_email(email)
        name = (name or "").strip()
        if not email or not name:
            raise ValidationError("email and name are required")
        validate_strength(secret)
        try:
            account = self.store.create_account_with_role(
                tenant_id=tenant_id,
                email=email,
                secret_hash=self.hasher.hash(secret),
                name=name,
                role=role,
                profile=profile,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered in this tenant", detail=exc.detail) from exc
        logger.info("account_created", account_id=account.id, tenant_id=tenant_id, role=role.value)
        return account

    # password reset
    async def forgot_password(self, email: str) -> None:
        """Mail a reset link to every active account with ``email``.

        The caller always gets the same response whether or not anything matched.
        """
        email = normalize_email(email)
        for account in self.store.find_accounts_by_email(email):
            if not account.is_active:
                continue
            token = secrets.token_hex(32)
            await self.cache.set(
                namespace_key(KeyKind.RESET_PASSWORD, token),
                {"subject_id": account.id, "tenant_id": account.tenant_id},
                self.settings.reset_token_ttl_seconds,
            )
            await notify(
                self.notifier,
                account.email,
                "password_reset",
                {"name": account.name, "token": token},
            )
            logger.info("password_reset_requested", subject_id=account.id)

    async def reset_password(self, token: str, new_secret: str) -> Account:
        validate_strength(new_secret)
        if not isinstance(token, str) or not HEX_TOKEN_RE.match(token):
            raise AuthenticationError(_INVALID_RESET)
        stored = await self.cache.pop(namespace_key(KeyKind.RESET_PASSWORD, token))
        if not stored:
            raise AuthenticationError(_INVALID_RESET)
        account = self.store.find_account_by_id(stored.get("subject_id", ""), stored.get("tenant_id"))
        if account is None or not account.is_active:
            raise AuthenticationError(_INVALID_RESET)
        updated = self.store.set_secret_hash(account.id, self.hasher.hash(new_secret))
        await self.tokens.revoke_all_for_subject(account.id)
        logger.info("password_reset_completed", subject_id=account.id)
        return updated or account
