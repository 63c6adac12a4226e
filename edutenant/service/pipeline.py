"""Ordered request pipeline: authenticate, authorize by role, inject tenant, rate limit.

Each operation is registered once in ``OPERATIONS`` with a ``Capability``
describing whether it is public, which roles may call it and which rate
limit applies. The pipeline is a plain list of stages built at startup by
``build_default_pipeline``; it stops at the first stage that raises, so the
error type tells which stage rejected the request.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, List, Optional, Sequence

from edutenant.config import Settings
from edutenant.logging import bind_request_scope, get_logger
from edutenant.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
)
from edutenant.service.tokens import AccessClaims, TokenIssuer
from edutenant.storage.models import Role

logger = get_logger(__name__)

current_tenant_var: ContextVar[Optional[str]] = ContextVar("current_tenant", default=None)


def get_current_tenant() -> Optional[str]:
    return current_tenant_var.get()


ALL_ROLES: FrozenSet[Role] = frozenset(Role)
MANAGERS: FrozenSet[Role] = frozenset({Role.ADMIN, Role.DIRETOR, Role.COORDENADOR})
ADMIN_ONLY: FrozenSet[Role] = frozenset({Role.ADMIN})


@dataclass(frozen=True)
class RateLimitRule:
    """Budget of ``limit_setting`` requests per ``window_seconds``."""

    limit_setting: str
    window_seconds: int = 60


@dataclass(frozen=True)
class Capability:
    name: str
    public: bool = False
    allowed_roles: FrozenSet[Role] = ALL_ROLES
    rate_limit: RateLimitRule = RateLimitRule("default_rate_limit_per_minute")


def _capabilities(*caps: Capability) -> dict[str, Capability]:
    return {cap.name: cap for cap in caps}


OPERATIONS: dict[str, Capability] = _capabilities(
    Capability("auth.login", public=True, rate_limit=RateLimitRule("login_rate_limit_per_minute")),
    Capability(
        "auth.refresh", public=True, rate_limit=RateLimitRule("refresh_rate_limit_per_minute")
    ),
    Capability(
        "auth.forgot_password",
        public=True,
        rate_limit=RateLimitRule("forgot_password_rate_limit_per_hour", 3600),
    ),
    Capability(
        "auth.reset_password", public=True, rate_limit=RateLimitRule("reset_rate_limit_per_minute")
    ),
    Capability("auth.logout"),
    Capability("auth.me"),
    Capability(
        "invites.accept",
        public=True,
        rate_limit=RateLimitRule("invite_accept_rate_limit_per_minute"),
    ),
    Capability(
        "invites.validate",
        public=True,
        rate_limit=RateLimitRule("invite_accept_rate_limit_per_minute"),
    ),
    Capability(
        "invites.create",
        allowed_roles=MANAGERS,
        rate_limit=RateLimitRule("invite_rate_limit_per_minute"),
    ),
    Capability(
        "invites.resend",
        allowed_roles=MANAGERS,
        rate_limit=RateLimitRule("invite_rate_limit_per_minute"),
    ),
    Capability("invites.cancel", allowed_roles=MANAGERS),
    Capability("invites.list", allowed_roles=MANAGERS),
    Capability("accounts.list", allowed_roles=MANAGERS),
    Capability("accounts.update", allowed_roles=MANAGERS),
    Capability("accounts.deactivate", allowed_roles=MANAGERS),
    Capability("accounts.reactivate", allowed_roles=MANAGERS),
    Capability("admin.accounts.create", allowed_roles=ADMIN_ONLY),
    Capability("admin.tenants.create", allowed_roles=ADMIN_ONLY),
)


@dataclass
class RequestContext:
    """What a handler knows about the caller once the pipeline has run.

    ``tenant_id`` comes from the verified access token only. Public
    operations get an anonymous context with just ``client_ip``.
    """

    client_ip: str
    subject_id: Optional[str] = None
    tenant_id: Optional[str] = None
    role: Optional[Role] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def scope_tenant(self) -> Optional[str]:
        """Tenant filter for record lookups; None (unscoped) only for ADMIN."""
        return None if self.is_admin else self.tenant_id


@dataclass
class PipelineState:
    capability: Capability
    client_ip: str
    bearer: Optional[str] = None
    claims: Optional[AccessClaims] = None
    context: Optional[RequestContext] = None
    trace: List[str] = field(default_factory=list)


Stage = Callable[[PipelineState], Awaitable[None]]
RateLimiter = Callable[[str, int, int], Awaitable[bool]]


@dataclass(frozen=True)
class PipelineStage:
    name: str
    run: Stage
    applies_to_public: bool = False


class RequestPipeline:
    def __init__(self, stages: Sequence[PipelineStage]) -> None:
        self.stages = list(stages)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def run(
        self, operation: str, *, bearer: Optional[str], client_ip: str
    ) -> RequestContext:
        try:
            capability = OPERATIONS[operation]
        except KeyError:
            raise LookupError(f"operation {operation!r} is not registered") from None
        state = PipelineState(capability=capability, client_ip=client_ip, bearer=bearer)
        for stage in self.stages:
            if capability.public and not stage.applies_to_public:
                continue
            await stage.run(state)
            state.trace.append(stage.name)
        return state.context or RequestContext(client_ip=client_ip)


def authenticate_stage(tokens: TokenIssuer) -> PipelineStage:
    async def authenticate(state: PipelineState) -> None:
        state.claims = tokens.authenticate(state.bearer)

    return PipelineStage("authenticate", authenticate)


def authorize_role_stage() -> PipelineStage:
    async def authorize_role(state: PipelineState) -> None:
        if state.claims is None:
            raise AuthenticationError("missing access token")
        if state.claims.role not in state.capability.allowed_roles:
            logger.info(
                "operation_forbidden",
                operation=state.capability.name,
                role=state.claims.role.value,
            )
            raise ForbiddenError("role not allowed for this operation")

    return PipelineStage("authorize_role", authorize_role)


def inject_tenant_stage() -> PipelineStage:
    async def inject_tenant(state: PipelineState) -> None:
        if state.claims is None:
            raise AuthenticationError("missing access token")
        claims = state.claims
        state.context = RequestContext(
            client_ip=state.client_ip,
            subject_id=claims.subject_id,
            tenant_id=claims.tenant_id,
            role=claims.role,
        )
        current_tenant_var.set(claims.tenant_id)
        bind_request_scope(
            tenant_id=claims.tenant_id, subject_id=claims.subject_id, role=claims.role.value
        )

    return PipelineStage("inject_tenant", inject_tenant)


def rate_limit_key(state: PipelineState) -> str:
    if state.context is not None and state.context.subject_id:
        return f"{state.capability.name}:user:{state.context.subject_id}"
    return f"{state.capability.name}:ip:{state.client_ip}"


def rate_limit_stage(limiter: RateLimiter, settings: Settings) -> PipelineStage:
    async def rate_limit(state: PipelineState) -> None:
        rule = state.capability.rate_limit
        limit = int(getattr(settings, rule.limit_setting))
        if not await limiter(rate_limit_key(state), limit, rule.window_seconds):
            logger.warning("rate_limited", operation=state.capability.name)
            raise RateLimitedError(
                "rate limit exceeded", detail={"retry_after": rule.window_seconds}
            )

    return PipelineStage("rate_limit", rate_limit, applies_to_public=True)


def build_default_pipeline(
    tokens: TokenIssuer, limiter: RateLimiter, settings: Settings
) -> RequestPipeline:
    return RequestPipeline(
        [
            authenticate_stage(tokens),
            authorize_role_stage(),
            inject_tenant_stage(),
            rate_limit_stage(limiter, settings),
        ]
    )


__all__ = [
    "Capability",
    "OPERATIONS",
    "PipelineStage",
    "RateLimitRule",
    "RequestContext",
    "RequestPipeline",
    "build_default_pipeline",
    "get_current_tenant",
]
