from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from edutenant.api.schemas import (
    AcceptInviteRequest,
    AccountListResponse,
    AccountResponse,
    AdminCreateAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    InvitationListResponse,
    InvitationResponse,
    InvitePreviewResponse,
    InviteRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    TenantCreateRequest,
    TenantResponse,
    TokenResponse,
    UpdateAccountRequest,
)
from edutenant.logging import get_logger
from edutenant.service.pipeline import RequestContext
from edutenant.service.runtime import get_runtime
from edutenant.service.tokens import TokenPair
from edutenant.storage.models import Account, InvitationStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_FORGOT_PASSWORD_MESSAGE = "if the address is registered, a reset link has been sent"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def pipeline_for(operation: str) -> Callable[..., Awaitable[RequestContext]]:
    """FastAPI dependency running the request pipeline for ``operation``."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> RequestContext:
        runtime = get_runtime()
        return await runtime.pipeline.run(
            operation, bearer=_bearer(authorization), client_ip=_client_ip(request)
        )

    dependency.__name__ = f"pipeline_{operation.replace('.', '_')}"
    return dependency


def _token_response(account: Account, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        account=AccountResponse.from_account(account),
    )


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(pipeline_for("auth.login"))):
    """Exchange email and password for an access token and a refresh token.

    Raises:
        401: If credentials are invalid or the account is deactivated
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    account, pair = await runtime.accounts.login(
        body.email, body.password, tenant_id=body.tenant_id
    )
    return Envelope(status="ok", data=_token_response(account, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest, ctx: RequestContext = Depends(pipeline_for("auth.refresh"))
):
    """Spend a refresh token and return a new pair. Each refresh token works once."""
    runtime = get_runtime()
    account, pair = await runtime.accounts.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(account, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest, ctx: RequestContext = Depends(pipeline_for("auth.logout"))
):
    runtime = get_runtime()
    await runtime.accounts.logout(body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(pipeline_for("auth.me"))):
    runtime = get_runtime()
    account = runtime.accounts.me(ctx)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    ctx: RequestContext = Depends(pipeline_for("auth.forgot_password")),
):
    """Send a reset link. The response never reveals whether the email exists."""
    runtime = get_runtime()
    await runtime.accounts.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_FORGOT_PASSWORD_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    ctx: RequestContext = Depends(pipeline_for("auth.reset_password")),
):
    runtime = get_runtime()
    await runtime.accounts.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


# invitations
@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: InviteRequest, ctx: RequestContext = Depends(pipeline_for("invites.create"))
):
    """Invite someone into a tenant with a role below the caller's.

    Raises:
        403: If the caller's role cannot invite the requested role
        409: If the email is already registered in the tenant
    """
    runtime = get_runtime()
    manager = runtime.invitations
    invitation = await manager.invite(
        manager.target_tenant(ctx, body.tenant_id),
        body.email,
        body.name,
        body.role,
        body.extra,
        actor=ctx,
    )
    return Envelope(status="ok", data=InvitationResponse.from_invitation(invitation))


@router.post("/invitations/accept", response_model=Envelope, status_code=201, tags=["invitations"])
async def accept_invitation(
    body: AcceptInviteRequest,
    ctx: RequestContext = Depends(pipeline_for("invites.accept")),
):
    runtime = get_runtime()
    account = await runtime.invitations.accept(body.token, body.password)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.get("/invitations/validate/{token}", response_model=Envelope, tags=["invitations"])
async def validate_invitation(
    token: str = Path(..., max_length=128),
    ctx: RequestContext = Depends(pipeline_for("invites.validate")),
):
    runtime = get_runtime()
    preview = await runtime.invitations.validate_token(token)
    return Envelope(status="ok", data=InvitePreviewResponse(**preview))


@router.post("/invitations/{invitation_id}/resend", response_model=Envelope, tags=["invitations"])
async def resend_invitation(
    invitation_id: str, ctx: RequestContext = Depends(pipeline_for("invites.resend"))
):
    runtime = get_runtime()
    invitation = await runtime.invitations.resend(invitation_id, ctx)
    return Envelope(status="ok", data=InvitationResponse.from_invitation(invitation))


@router.post("/invitations/{invitation_id}/cancel", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    invitation_id: str, ctx: RequestContext = Depends(pipeline_for("invites.cancel"))
):
    runtime = get_runtime()
    invitation = await runtime.invitations.cancel(invitation_id, ctx)
    return Envelope(status="ok", data=InvitationResponse.from_invitation(invitation))


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(
    status: Optional[InvitationStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    ctx: RequestContext = Depends(pipeline_for("invites.list")),
):
    runtime = get_runtime()
    rows, total = runtime.invitations.list_invitations(
        ctx, status=status, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=InvitationListResponse(
            items=[InvitationResponse.from_invitation(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        ),
    )


# accounts
@router.get("/accounts", response_model=Envelope, tags=["accounts"])
async def list_accounts(
    search: Optional[str] = Query(None, max_length=200),
    include_inactive: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    ctx: RequestContext = Depends(pipeline_for("accounts.list")),
):
    """List the accounts the caller can manage, sorted by name."""
    runtime = get_runtime()
    rows, total = runtime.accounts.list_accounts(
        ctx, search=search, include_inactive=include_inactive, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=AccountListResponse(
            items=[AccountResponse.from_account(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.patch("/accounts/{account_id}", response_model=Envelope, tags=["accounts"])
async def update_account(
    account_id: str,
    body: UpdateAccountRequest,
    ctx: RequestContext = Depends(pipeline_for("accounts.update")),
):
    runtime = get_runtime()
    account = runtime.accounts.update_account(
        account_id, ctx, name=body.name, email=body.email
    )
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/accounts/{account_id}/deactivate", response_model=Envelope, tags=["accounts"])
async def deactivate_account(
    account_id: str, ctx: RequestContext = Depends(pipeline_for("accounts.deactivate"))
):
    runtime = get_runtime()
    account = await runtime.accounts.deactivate_account(account_id, ctx)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/accounts/{account_id}/reactivate", response_model=Envelope, tags=["accounts"])
async def reactivate_account(
    account_id: str, ctx: RequestContext = Depends(pipeline_for("accounts.reactivate"))
):
    runtime = get_runtime()
    account = runtime.accounts.reactivate_account(account_id, ctx)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


# admin
@router.post("/admin/accounts", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_account(
    body: AdminCreateAccountRequest,
    ctx: RequestContext = Depends(pipeline_for("admin.accounts.create")),
):
    runtime = get_runtime()
    account = runtime.accounts.create_account(
        email=body.email,
        name=body.name,
        role=body.role,
        secret=body.password,
        tenant_id=body.tenant_id,
    )
    logger.info("admin_account_created", account_id=account.id, actor_id=ctx.subject_id)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/admin/tenants", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_tenant(
    body: TenantCreateRequest,
    ctx: RequestContext = Depends(pipeline_for("admin.tenants.create")),
):
    runtime = get_runtime()
    tenant = runtime.store.create_tenant(body.name, active=body.active)
    logger.info("tenant_created", tenant_id=tenant.id, actor_id=ctx.subject_id)
    return Envelope(status="ok", data=TenantResponse.from_tenant(tenant))
