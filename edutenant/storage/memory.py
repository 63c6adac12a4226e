from __future__ import annotations

import json
import math
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from edutenant.logging import get_logger
from edutenant.storage.errors import ConstraintViolation
from edutenant.storage.models import (
    Account,
    Invitation,
    InvitationStatus,
    Role,
    Tenant,
    utcnow,
)


def _status_matches(inv: Invitation, status: Optional[InvitationStatus], now: datetime) -> bool:
    return status is None or inv.effective_status(now) == status


class MemoryStore:
    """In-process record store for tests and local development.

    Every public method holds one re-entrant lock for its whole body, so each
    call is a transaction: an account and its profile land together or not at
    all, and an invitation supersede never leaves both records pending.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.accounts: Dict[str, Account] = {}
        self.invitations: Dict[str, Invitation] = {}
        self._data_lock = threading.RLock()

    # tenants
    def create_tenant(
        self, name: str, *, active: bool = True, tenant_id: Optional[str] = None
    ) -> Tenant:
        with self._data_lock:
            tenant_id = tenant_id or str(uuid.uuid4())
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            tenant = Tenant(id=tenant_id, name=name, active=active)
            self.tenants[tenant_id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def set_tenant_active(self, tenant_id: str, active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.active = active
            return tenant

    # accounts
    def _scoped(self, account_id: str, tenant_id: Optional[str]) -> Optional[Account]:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        if tenant_id is not None and account.tenant_id != tenant_id:
            return None
        return account

    def find_account_by_email_in_tenant(
        self, tenant_id: Optional[str], email: str
    ) -> Optional[Account]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email == email and a.tenant_id == tenant_id
                ),
                None,
            )

    def find_accounts_by_email(self, email: str) -> List[Account]:
        with self._data_lock:
            matches = [a for a in self.accounts.values() if a.email == email]
            return sorted(matches, key=lambda a: a.created_at)

    def find_account_by_id(
        self, account_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        """Look up an account; a ``tenant_id`` restricts the match to that tenant."""
        with self._data_lock:
            return self._scoped(account_id, tenant_id)

    def create_account_with_role(
        self,
        *,
        tenant_id: Optional[str],
        email: str,
        secret_hash: str,
        name: str,
        role: Role,
        profile: Optional[Dict[str, str]] = None,
        invitation_id: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self.find_account_by_email_in_tenant(tenant_id, email):
                raise ConstraintViolation(
                    "email already exists in tenant", {"field": "email"}
                )
            if invitation_id is not None:
                invitation = self.invitations.get(invitation_id)
                if invitation is None or invitation.status != InvitationStatus.PENDING:
                    raise ConstraintViolation(
                        "invitation is no longer pending", {"field": "invitation"}
                    )
                # The account is stored only once the invitation is marked
                self.set_invitation_status(
                    invitation_id, InvitationStatus.ACCEPTED, accepted_at=utcnow()
                )
            account = Account(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                email=email,
                name=name,
                role=role,
                secret_hash=secret_hash,
                profile=dict(profile or {}),
            )
            self.accounts[account.id] = account
            return account

    def update_account(
        self,
        account_id: str,
        tenant_id: Optional[str],
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._scoped(account_id, tenant_id)
            if account is None:
                return None
            if email is not None and email != account.email:
                clash = self.find_account_by_email_in_tenant(account.tenant_id, email)
                if clash and clash.id != account.id:
                    raise ConstraintViolation(
                        "email already exists in tenant", {"field": "email"}
                    )
                account.email = email
            if name is not None:
                account.name = name
            account.updated_at = utcnow()
            return account

    def soft_deactivate(self, account_id: str, tenant_id: Optional[str]) -> Optional[Account]:
        with self._data_lock:
            account = self._scoped(account_id, tenant_id)
            if account is None:
                return None
            account.deactivated_at = utcnow()
            account.updated_at = account.deactivated_at
            return account

    def reactivate(self, account_id: str, tenant_id: Optional[str]) -> Optional[Account]:
        with self._data_lock:
            account = self._scoped(account_id, tenant_id)
            if account is None:
                return None
            account.deactivated_at = None
            account.updated_at = utcnow()
            return account

    def set_secret_hash(self, account_id: str, secret_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            account.secret_hash = secret_hash
            account.updated_at = utcnow()
            return account

    def list_accounts(
        self,
        tenant_id: Optional[str],
        *,
        roles: Iterable[Role],
        search: Optional[str] = None,
        include_inactive: bool = False,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        allowed = {Role(r) for r in roles}
        needle = search.lower() if search else None
        with self._data_lock:
            rows = [
                a
                for a in self.accounts.values()
                if (tenant_id is None or a.tenant_id == tenant_id)
                and a.role in allowed
                and (include_inactive or a.is_active)
                and (
                    needle is None
                    or needle in a.name.lower()
                    or needle in a.email.lower()
                )
            ]
        rows.sort(key=lambda a: a.name.lower())
        return rows[offset : offset + limit], len(rows)

    # invitations
    def create_invitation(
        self,
        *,
        tenant_id: str,
        email: str,
        name: str,
        role: Role,
        token: str,
        expires_at: datetime,
        created_by: Optional[str] = None,
        extra: Optional[Dict[str, str]] = None,
    ) -> Invitation:
        with self._data_lock:
            if any(inv.token == token for inv in self.invitations.values()):
                raise ConstraintViolation("invitation token already exists", {"field": "token"})
            invitation = Invitation(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                email=email,
                name=name,
                role=role,
                token=token,
                expires_at=expires_at,
                created_by=created_by,
                extra=dict(extra or {}),
            )
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(
        self, invitation_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if inv is None or (tenant_id is not None and inv.tenant_id != tenant_id):
                return None
            return inv

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            return next((i for i in self.invitations.values() if i.token == token), None)

    def set_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        *,
        accepted_at: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if inv is None:
                return None
            inv.status = InvitationStatus(status)
            if accepted_at is not None:
                inv.accepted_at = accepted_at
            return inv

    def supersede_invitation(
        self, invitation_id: str, *, token: str, expires_at: datetime, created_by: Optional[str]
    ) -> Invitation:
        """Cancel ``invitation_id`` and create its pending replacement in one step."""
        with self._data_lock:
            old = self.invitations.get(invitation_id)
            if old is None:
                raise ConstraintViolation("invitation does not exist", {"field": "id"})
            fresh = self.create_invitation(
                tenant_id=old.tenant_id,
                email=old.email,
                name=old.name,
                role=old.role,
                token=token,
                expires_at=expires_at,
                created_by=created_by or old.created_by,
                extra=old.extra,
            )
            old.status = InvitationStatus.CANCELLED
            return fresh

    def list_invitations(
        self,
        tenant_id: Optional[str],
        *,
        status: Optional[InvitationStatus] = None,
        now: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Invitation], int]:
        now = now or utcnow()
        with self._data_lock:
            rows = [
                replace(inv)
                for inv in self.invitations.values()
                if (tenant_id is None or inv.tenant_id == tenant_id)
                and _status_matches(inv, status, now)
            ]
        rows.sort(key=lambda inv: inv.created_at, reverse=True)
        return rows[offset : offset + limit], len(rows)


class MemoryCredentialStore:
    """Process-local stand-in for ``RedisCache`` when Redis is disabled.

    Values are kept JSON-encoded so callers never share mutable state with the
    store, and a single lock makes ``pop`` a true get-and-delete.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        expires = self._clock() + max(1, int(ttl_seconds))
        with self._lock:
            self._entries[key] = (json.dumps(value), expires)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live(key)
        return json.loads(entry[0]) if entry else None

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._live(key) and self._entries.pop(key, None) else 0

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            return max(0, math.ceil(entry[1] - self._clock()))

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
        return json.loads(entry[0])

    async def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._entries) if k.startswith(prefix) and self._live(k)]

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        reset_seconds = 0 if allowed else math.ceil((cost - tokens) / refill_rate)
        if return_remaining:
            return (allowed, int(tokens), reset_seconds)
        return allowed

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()
