"""Tests for the role hierarchy checks."""

import pytest

from edutenant.service.errors import ForbiddenError
from edutenant.service.roles import (
    authorize_management,
    can_invite,
    can_manage,
    manageable_roles,
)
from edutenant.storage.models import Role

P, C, D, A = Role.PROFESSOR, Role.COORDENADOR, Role.DIRETOR, Role.ADMIN


class TestCanManage:
    @pytest.mark.parametrize(
        "actor, subject, expected",
        [
            (D, C, True),
            (D, P, True),
            (C, P, True),
            (C, C, False),
            (C, D, False),
            (P, P, False),
            (P, C, False),
            (D, D, False),
        ],
    )
    def test_same_tenant_requires_higher_rank(self, actor, subject, expected):
        assert can_manage(actor, "t1", "actor", subject, "t1", "subject") is expected

    def test_cross_tenant_is_denied(self):
        assert can_manage(D, "t1", "actor", P, "t2", "subject") is False

    def test_admin_manages_any_tenant(self):
        assert can_manage(A, None, "admin", D, "t1", "subject") is True
        assert can_manage(A, None, "admin", A, None, "other-admin") is True

    def test_tenant_role_cannot_manage_admin(self):
        assert can_manage(D, "t1", "actor", A, None, "admin") is False

    def test_self_management_is_denied(self):
        assert can_manage(A, None, "same", A, None, "same") is False
        assert can_manage(D, "t1", "same", D, "t1", "same") is False

    def test_authorize_management_raises_forbidden(self):
        with pytest.raises(ForbiddenError):
            authorize_management(C, "t1", "actor", D, "t1", "subject")
        authorize_management(D, "t1", "actor", C, "t1", "subject")


class TestCanInvite:
    @pytest.mark.parametrize(
        "actor, target, expected",
        [
            (A, D, True),
            (A, C, True),
            (A, P, True),
            (D, C, True),
            (D, P, True),
            (D, D, False),
            (C, P, True),
            (C, C, False),
            (C, D, False),
            (P, P, False),
        ],
    )
    def test_invite_matrix(self, actor, target, expected):
        assert can_invite(actor, target) is expected

    def test_admin_cannot_be_invited(self):
        assert can_invite(A, A) is False

    def test_accepts_role_strings(self):
        assert can_invite("DIRETOR", "PROFESSOR") is True


class TestManageableRoles:
    def test_roles_below_actor(self):
        assert manageable_roles(D) == [P, C]
        assert manageable_roles(C) == [P]
        assert manageable_roles(P) == []

    def test_admin_sees_all_tenant_roles(self):
        assert manageable_roles(A) == [P, C, D]
