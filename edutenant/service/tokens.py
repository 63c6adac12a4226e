from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from edutenant.config import Settings
from edutenant.logging import get_logger
from edutenant.service.errors import AuthenticationError
from edutenant.storage.keys import KeyKind, namespace_key, namespace_prefix
from edutenant.storage.models import Account, Role

logger = get_logger(__name__)

_INVALID_REFRESH = "invalid or expired refresh token"
_INVALID_ACCESS = "invalid or expired access token"


class AccountLookup(Protocol):
    def find_account_by_id(
        self, account_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        ...


@dataclass
class AccessClaims:
    subject_id: str
    tenant_id: Optional[str]
    role: Role
    jti: str
    expires_at: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class TokenIssuer:
    """Signs access tokens and keeps single-use refresh tokens in the credential store.

    Access tokens are HS256 JWTs and are never stored. Refresh tokens are
    opaque ids under ``refresh_token:<id>``; the only way to spend one is an
    atomic ``pop``, which is what makes rotation safe under concurrency.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Any,
        store: AccountLookup,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.store = store
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    # JWT helpers
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    # issuance
    def _access_token(self, account: Account) -> str:
        now = int(self._clock())
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": account.id,
                "tenant_id": account.tenant_id,
                "role": Role(account.role).value,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            }
        )

    async def issue_tokens(self, account: Account) -> TokenPair:
        """Mint an access token and a new refresh token; other refresh tokens stay valid."""
        refresh_id = secrets.token_urlsafe(32)
        await self.cache.set(
            namespace_key(KeyKind.REFRESH_TOKEN, refresh_id),
            {
                "subject_id": account.id,
                "tenant_id": account.tenant_id,
                "role": Role(account.role).value,
            },
            self.settings.refresh_token_ttl_seconds,
        )
        return TokenPair(
            access_token=self._access_token(account),
            refresh_token=refresh_id,
            expires_in=self.access_ttl_seconds,
        )

    @staticmethod
    def _refresh_key(refresh_token: str) -> str:
        try:
            return namespace_key(KeyKind.REFRESH_TOKEN, refresh_token)
        except ValueError:
            raise AuthenticationError(_INVALID_REFRESH) from None

    async def rotate_tokens(self, refresh_token: str) -> tuple[Account, TokenPair]:
        """Spend ``refresh_token`` and issue a replacement pair.

        The account is re-read under the tenant recorded at issuance so a
        changed role, a move to another tenant, or a deactivation takes effect
        at the next refresh.
        """
        stored = await self.cache.pop(self._refresh_key(refresh_token))
        if not stored or not stored.get("subject_id"):
            logger.info("refresh_rejected", reason="unknown_or_spent")
            raise AuthenticationError(_INVALID_REFRESH)
        account = self.store.find_account_by_id(stored["subject_id"], stored.get("tenant_id"))
        if account is None or account.tenant_id != stored.get("tenant_id"):
            logger.warning("refresh_rejected", reason="account_missing")
            raise AuthenticationError(_INVALID_REFRESH)
        if not account.is_active:
            logger.info("refresh_rejected", reason="account_deactivated", subject_id=account.id)
            raise AuthenticationError(_INVALID_REFRESH)
        pair = await self.issue_tokens(account)
        logger.info("refresh_rotated", subject_id=account.id, tenant_id=account.tenant_id)
        return account, pair

    async def revoke(self, refresh_token: str) -> bool:
        """Delete the refresh token; an absent token counts as revoked."""
        try:
            key = namespace_key(KeyKind.REFRESH_TOKEN, refresh_token)
        except ValueError:
            return True
        await self.cache.delete(key)
        return True

    async def logout(self, refresh_token: str) -> None:
        deleted = await self.cache.delete(self._refresh_key(refresh_token))
        if not deleted:
            raise AuthenticationError(_INVALID_REFRESH)
        logger.info("refresh_revoked")

    async def revoke_all_for_subject(self, subject_id: str) -> int:
        revoked = 0
        for key in await self.cache.keys(namespace_prefix(KeyKind.REFRESH_TOKEN)):
            payload = await self.cache.get(key)
            if payload and payload.get("subject_id") == subject_id:
                revoked += await self.cache.delete(key)
        if revoked:
            logger.info("refresh_revoked_all", subject_id=subject_id, count=revoked)
        return revoked

    def authenticate(self, bearer: Optional[str]) -> AccessClaims:
        """Verify an access token. Any failure is a 401 and is never retried."""
        if not bearer:
            raise AuthenticationError("missing access token")
        payload = self._decode_jwt(bearer)
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            raise AuthenticationError(_INVALID_ACCESS)
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError(_INVALID_ACCESS) from None
        tenant_id = payload.get("tenant_id")
        if role != Role.ADMIN and not tenant_id:
            raise AuthenticationError(_INVALID_ACCESS)
        return AccessClaims(
            subject_id=str(payload["sub"]),
            tenant_id=tenant_id,
            role=role,
            jti=str(payload.get("jti", "")),
            expires_at=int(payload["exp"]),
        )
