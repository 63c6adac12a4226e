from __future__ import annotations

from typing import List, Optional

from edutenant.service.errors import ForbiddenError
from edutenant.storage.models import INVITABLE_ROLES, Role

RANK = {
    Role.PROFESSOR: 0,
    Role.COORDENADOR: 1,
    Role.DIRETOR: 2,
}


def can_manage(
    actor_role: Role,
    actor_tenant: Optional[str],
    actor_id: str,
    subject_role: Role,
    subject_tenant: Optional[str],
    subject_id: str,
) -> bool:
    """Whether the actor may update or deactivate the subject account.

    ADMIN may manage anyone but themselves. Anyone else needs the same tenant
    and a strictly higher rank, which also rules out managing an ADMIN.
    """
    actor_role = Role(actor_role)
    subject_role = Role(subject_role)
    if actor_id == subject_id:
        return False
    if actor_role == Role.ADMIN:
        return True
    if subject_role == Role.ADMIN:
        return False
    if actor_tenant is None or actor_tenant != subject_tenant:
        return False
    return RANK[actor_role] > RANK[subject_role]


def authorize_management(
    actor_role: Role,
    actor_tenant: Optional[str],
    actor_id: str,
    subject_role: Role,
    subject_tenant: Optional[str],
    subject_id: str,
) -> None:
    if not can_manage(
        actor_role, actor_tenant, actor_id, subject_role, subject_tenant, subject_id
    ):
        raise ForbiddenError("not allowed to manage this account")


def can_invite(actor_role: Role, target_role: Role) -> bool:
    actor_role = Role(actor_role)
    target_role = Role(target_role)
    if target_role not in INVITABLE_ROLES:
        return False
    if actor_role == Role.ADMIN:
        return True
    return RANK[actor_role] > RANK[target_role]


def manageable_roles(actor_role: Role) -> List[Role]:
    """Roles strictly below the actor; ADMIN sees every tenant-bound role."""
    actor_role = Role(actor_role)
    if actor_role == Role.ADMIN:
        return list(INVITABLE_ROLES)
    return [role for role in INVITABLE_ROLES if RANK[role] < RANK[actor_role]]
