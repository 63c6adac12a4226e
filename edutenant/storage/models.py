from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Fixed account roles. ADMIN is platform level and has no tenant."""

    PROFESSOR = "PROFESSOR"
    COORDENADOR = "COORDENADOR"
    DIRETOR = "DIRETOR"
    ADMIN = "ADMIN"


# Roles that can be reached through an invitation, lowest rank first
INVITABLE_ROLES = (Role.PROFESSOR, Role.COORDENADOR, Role.DIRETOR)


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class Tenant:
    id: str
    name: str
    active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    name: str
    role: Role
    secret_hash: str
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None
    profile: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        if self.role != Role.ADMIN and not self.tenant_id:
            raise ValueError("tenant-bound accounts require a tenant_id")

    @property
    def is_active(self) -> bool:
        return self.deactivated_at is None


@dataclass
class Invitation:
    id: str
    tenant_id: str
    email: str
    name: str
    role: Role
    token: str
    expires_at: datetime
    status: InvitationStatus = InvitationStatus.PENDING
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.role = Role(self.role)
        self.status = InvitationStatus(self.status)

    def effective_status(self, now: Optional[datetime] = None) -> InvitationStatus:
        """Pending records past their expiry read as expired; nothing rewrites them."""
        if self.status == InvitationStatus.PENDING and self.expires_at <= (now or utcnow()):
            return InvitationStatus.EXPIRED
        return self.status
