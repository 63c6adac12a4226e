"""Integration tests for the HTTP surface.

Covers the complete flows through the request pipeline:
- Login, refresh rotation, logout and /auth/me
- Inviting, previewing and accepting invitations
- Account management across the role hierarchy and tenants
- Error envelope shape, rate limiting and admin endpoints
"""

import pytest
from fastapi.testclient import TestClient

from edutenant import app as app_module
from edutenant.storage.models import Role

PASSWORD = "Senha1234"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def diretor(make_account, tenant):
    return make_account(Role.DIRETOR, tenant.id, email="diretor@escola.com", password=PASSWORD)


def _login(client, email, password=PASSWORD, **extra):
    response = client.post("/v1/auth/login", json={"email": email, "password": password, **extra})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def _invite(client, headers, notifier, email="prof@escola.com", role="PROFESSOR", **extra):
    response = client.post(
        "/v1/invitations",
        json={"email": email, "name": "Prof Ana", "role": role, **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    token = notifier.sent[-1][2]["token"]
    return response.json()["data"], token


class TestSessionFlow:
    def test_login_me_refresh_logout(self, client, diretor):
        data = _login(client, "diretor@escola.com")
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60
        assert data["account"]["role"] == "DIRETOR"
        assert "secret_hash" not in data["account"]

        me = client.get("/v1/auth/me", headers=_auth(data))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "diretor@escola.com"

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert rotated.status_code == 200
        new_refresh = rotated.json()["data"]["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

        logout = client.post(
            "/v1/auth/logout", json={"refresh_token": new_refresh}, headers=_auth(data)
        )
        assert logout.status_code == 200
        again = client.post(
            "/v1/auth/logout", json={"refresh_token": new_refresh}, headers=_auth(data)
        )
        assert again.status_code == 401

    def test_bad_credentials(self, client, diretor):
        response = client.post(
            "/v1/auth/login", json={"email": "diretor@escola.com", "password": "Errada123"}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_me_requires_bearer(self, client):
        assert client.get("/v1/auth/me").status_code == 401
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})
        assert response.status_code == 401

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_id_round_trip(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"email": "nobody@escola.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_login_is_rate_limited(self, client, runtime, diretor):
        runtime.settings.login_rate_limit_per_minute = 2
        for _ in range(2):
            client.post("/v1/auth/login", json={"email": "diretor@escola.com", "password": PASSWORD})
        response = client.post(
            "/v1/auth/login", json={"email": "diretor@escola.com", "password": PASSWORD}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["Retry-After"] == "60"

    def test_forgot_password_never_reveals_accounts(self, client, diretor, notifier):
        known = client.post("/v1/auth/forgot-password", json={"email": "diretor@escola.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "nobody@escola.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

        token = notifier.sent[0][2]["token"]
        reset = client.post(
            "/v1/auth/reset-password", json={"token": token, "new_password": "NovaSenha1"}
        )
        assert reset.status_code == 200
        _login(client, "diretor@escola.com", "NovaSenha1")


class TestInvitationFlow:
    def test_invite_preview_accept(self, client, diretor, tenant, notifier):
        headers = _auth(_login(client, "diretor@escola.com"))
        invitation, token = _invite(
            client, headers, notifier, extra={"disciplina": "Matemática", "telefone": ""}
        )
        assert invitation["status"] == "pending"
        assert invitation["tenant_id"] == tenant.id
        assert "token" not in invitation

        preview = client.get(f"/v1/invitations/validate/{token}")
        assert preview.status_code == 200
        assert preview.json()["data"]["tenant_name"] == "Escola Alfa"

        accepted = client.post("/v1/invitations/accept", json={"token": token, "password": PASSWORD})
        assert accepted.status_code == 201
        account = accepted.json()["data"]
        assert account["role"] == "PROFESSOR"
        assert account["profile"] == {"disciplina": "Matemática"}

        replay = client.post("/v1/invitations/accept", json={"token": token, "password": PASSWORD})
        assert replay.status_code == 401

        professor = _login(client, "prof@escola.com")
        assert professor["account"]["tenant_id"] == tenant.id

    def test_tenant_comes_from_token_not_body(self, client, diretor, tenant, other_tenant, notifier):
        headers = _auth(_login(client, "diretor@escola.com"))
        invitation, _ = _invite(client, headers, notifier, tenant_id=other_tenant.id)
        assert invitation["tenant_id"] == tenant.id

    def test_professor_cannot_invite(self, client, make_account, tenant):
        make_account(Role.PROFESSOR, tenant.id, email="prof@escola.com", password=PASSWORD)
        headers = _auth(_login(client, "prof@escola.com"))
        response = client.post(
            "/v1/invitations",
            json={"email": "x@escola.com", "name": "X", "role": "PROFESSOR"},
            headers=headers,
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_invalid_token_on_role_restricted_route_is_401(self, client):
        response = client.post(
            "/v1/invitations",
            json={"email": "x@escola.com", "name": "X", "role": "PROFESSOR"},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401

    def test_resend_accepted_is_invalid_state(self, client, diretor, notifier):
        headers = _auth(_login(client, "diretor@escola.com"))
        invitation, token = _invite(client, headers, notifier)
        client.post("/v1/invitations/accept", json={"token": token, "password": PASSWORD})

        response = client.post(f"/v1/invitations/{invitation['id']}/resend", headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_state"

    def test_cancel_and_list(self, client, diretor, notifier):
        headers = _auth(_login(client, "diretor@escola.com"))
        invitation, token = _invite(client, headers, notifier)

        cancelled = client.post(f"/v1/invitations/{invitation['id']}/cancel", headers=headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        assert client.get(f"/v1/invitations/validate/{token}").status_code == 401

        listing = client.get("/v1/invitations", params={"status": "cancelled"}, headers=headers)
        assert listing.status_code == 200
        assert listing.json()["data"]["total"] == 1

    def test_duplicate_email_conflicts(self, client, diretor, notifier):
        headers = _auth(_login(client, "diretor@escola.com"))
        response = client.post(
            "/v1/invitations",
            json={"email": "diretor@escola.com", "name": "D", "role": "PROFESSOR"},
            headers=headers,
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"


class TestAccountManagement:
    def test_deactivate_blocks_login(self, client, diretor, make_account, tenant):
        professor = make_account(Role.PROFESSOR, tenant.id, email="prof@escola.com", password=PASSWORD)
        headers = _auth(_login(client, "diretor@escola.com"))

        response = client.post(f"/v1/accounts/{professor.id}/deactivate", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["active"] is False
        denied = client.post("/v1/auth/login", json={"email": "prof@escola.com", "password": PASSWORD})
        assert denied.status_code == 401

        listing = client.get("/v1/accounts", params={"include_inactive": "true"}, headers=headers)
        assert [row["id"] for row in listing.json()["data"]["items"]] == [professor.id]

        reactivated = client.post(f"/v1/accounts/{professor.id}/reactivate", headers=headers)
        assert reactivated.json()["data"]["active"] is True

    def test_cross_tenant_is_not_found(self, client, diretor, make_account, other_tenant):
        outsider = make_account(Role.PROFESSOR, other_tenant.id, email="x@beta.com")
        headers = _auth(_login(client, "diretor@escola.com"))

        response = client.patch(f"/v1/accounts/{outsider.id}", json={"name": "Hack"}, headers=headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_cannot_manage_self(self, client, diretor):
        headers = _auth(_login(client, "diretor@escola.com"))
        response = client.post(f"/v1/accounts/{diretor.id}/deactivate", headers=headers)
        assert response.status_code == 403

    def test_coordenador_cannot_list_accounts_above(self, client, make_account, tenant, diretor):
        make_account(Role.COORDENADOR, tenant.id, email="coord@escola.com", password=PASSWORD)
        headers = _auth(_login(client, "coord@escola.com"))
        listing = client.get("/v1/accounts", headers=headers)
        assert listing.status_code == 200
        assert listing.json()["data"]["total"] == 0


class TestAdmin:
    def test_admin_creates_tenant_and_director(self, client, make_account, notifier):
        make_account(Role.ADMIN, email="root@plataforma.com", password=PASSWORD)
        headers = _auth(_login(client, "root@plataforma.com"))

        tenant = client.post("/v1/admin/tenants", json={"name": "Escola Nova"}, headers=headers)
        assert tenant.status_code == 201
        tenant_id = tenant.json()["data"]["id"]

        missing_tenant = client.post(
            "/v1/invitations",
            json={"email": "d@nova.com", "name": "D", "role": "DIRETOR"},
            headers=headers,
        )
        assert missing_tenant.status_code == 400

        invitation, _ = _invite(
            client, headers, notifier, email="d@nova.com", role="DIRETOR", tenant_id=tenant_id
        )
        assert invitation["tenant_id"] == tenant_id

        created = client.post(
            "/v1/admin/accounts",
            json={
                "email": "c@nova.com",
                "name": "Coord",
                "role": "COORDENADOR",
                "password": PASSWORD,
                "tenant_id": tenant_id,
            },
            headers=headers,
        )
        assert created.status_code == 201
        assert created.json()["data"]["tenant_id"] == tenant_id

    def test_admin_routes_need_admin(self, client, diretor):
        headers = _auth(_login(client, "diretor@escola.com"))
        response = client.post("/v1/admin/tenants", json={"name": "X"}, headers=headers)
        assert response.status_code == 403


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
