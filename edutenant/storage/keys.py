from __future__ import annotations

from enum import Enum

from edutenant.storage.models import INVITABLE_ROLES, Role


class KeyKind(str, Enum):
    """Every kind of entry the auth core keeps in the credential store."""

    REFRESH_TOKEN = "refresh_token"
    INVITE_PROFESSOR = "invite_professor"
    INVITE_COORDENADOR = "invite_coordenador"
    INVITE_DIRETOR = "invite_diretor"
    RESET_PASSWORD = "reset_password"


_INVITE_KINDS = {
    Role.PROFESSOR: KeyKind.INVITE_PROFESSOR,
    Role.COORDENADOR: KeyKind.INVITE_COORDENADOR,
    Role.DIRETOR: KeyKind.INVITE_DIRETOR,
}


def namespace_key(kind: KeyKind, identifier: str) -> str:
    """Build the credential-store key for ``identifier``.

    All keys are ``<kind>:<identifier>``; callers never format keys by hand.
    """
    kind = KeyKind(kind)
    if not identifier or ":" in identifier:
        raise ValueError("key identifiers must be non-empty and contain no ':'")
    return f"{kind.value}:{identifier}"


def namespace_prefix(kind: KeyKind) -> str:
    return f"{KeyKind(kind).value}:"


def invite_kind(role: Role) -> KeyKind:
    try:
        return _INVITE_KINDS[Role(role)]
    except KeyError:
        raise ValueError(f"role {role} cannot be invited") from None


def invite_kinds() -> list[KeyKind]:
    """Invite namespaces in lookup order (lowest rank first)."""
    return [_INVITE_KINDS[role] for role in INVITABLE_ROLES]


__all__ = ["KeyKind", "namespace_key", "namespace_prefix", "invite_kind", "invite_kinds"]
