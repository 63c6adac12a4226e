import pytest

from edutenant.storage.keys import (
    KeyKind,
    invite_kind,
    invite_kinds,
    namespace_key,
    namespace_prefix,
)
from edutenant.storage.models import Role


def test_namespace_key_format():
    assert namespace_key(KeyKind.REFRESH_TOKEN, "abc") == "refresh_token:abc"
    assert namespace_key(KeyKind.INVITE_DIRETOR, "f00d") == "invite_diretor:f00d"
    assert namespace_key("reset_password", "x1") == "reset_password:x1"


@pytest.mark.parametrize("identifier", ["", "a:b"])
def test_namespace_key_rejects_bad_identifiers(identifier):
    with pytest.raises(ValueError):
        namespace_key(KeyKind.REFRESH_TOKEN, identifier)


def test_namespace_key_rejects_unknown_kind():
    with pytest.raises(ValueError):
        namespace_key("session", "abc")


def test_namespace_prefix():
    assert namespace_prefix(KeyKind.REFRESH_TOKEN) == "refresh_token:"


def test_invite_kind_per_role():
    assert invite_kind(Role.PROFESSOR) is KeyKind.INVITE_PROFESSOR
    assert invite_kind("COORDENADOR") is KeyKind.INVITE_COORDENADOR
    assert invite_kind(Role.DIRETOR) is KeyKind.INVITE_DIRETOR
    with pytest.raises(ValueError):
        invite_kind(Role.ADMIN)


def test_invite_kinds_lowest_rank_first():
    assert invite_kinds() == [
        KeyKind.INVITE_PROFESSOR,
        KeyKind.INVITE_COORDENADOR,
        KeyKind.INVITE_DIRETOR,
    ]
