from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        tenant_id TEXT REFERENCES tenant(id),
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        secret_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deactivated_at TIMESTAMPTZ,
        CHECK (role = 'ADMIN' OR tenant_id IS NOT NULL)
    )
    """,
    # ADMIN rows carry a NULL tenant; COALESCE keeps their emails unique too
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_email_tenant_key
        ON account (email, COALESCE(tenant_id, ''))
    """,
    """
    CREATE TABLE IF NOT EXISTS account_profile (
        account_id TEXT PRIMARY KEY REFERENCES account(id),
        role TEXT NOT NULL,
        fields JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invitation (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'pending',
        expires_at TIMESTAMPTZ NOT NULL,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        accepted_at TIMESTAMPTZ,
        extra JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS invitation_tenant_idx ON invitation (tenant_id, created_at DESC)",
)

_ACCOUNT_SELECT = """
    SELECT a.*, p.fields AS profile
    FROM account a LEFT JOIN account_profile p ON p.account_id = a.id
"""


def _json_field(raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    return dict(raw) if isinstance(raw, dict) else {}


class PostgresStore:
    """Tenant-scoped record store on Postgres.

    Multi-row writes (account + profile, invitation supersede) run inside
    ``conn.transaction()`` so a failure rolls the whole unit back.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            tenant_id=row.get("tenant_id"),
            email=row["email"],
            name=row["name"],
            role=Role(row["role"]),
            secret_hash=row["secret_hash"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deactivated_at=row.get("deactivated_at"),
            profile=_json_field(row.get("profile")),
        )

    @staticmethod
    def _invitation_from_row(row: Dict[str, Any]) -> Invitation:
        return Invitation(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            email=row["email"],
            name=row["name"],
            role=Role(row["role"]),
            token=row["token"],
            status=InvitationStatus(row["status"]),
            expires_at=row["expires_at"],
            created_by=row.get("created_by"),
            created_at=row.get("created_at") or utcnow(),
            accepted_at=row.get("accepted_at"),
            extra=_json_field(row.get("extra")),
        )

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            active=bool(row["active"]),
            created_at=row.get("created_at") or utcnow(),
        )

    # tenants
    def create_tenant(
        self, name: str, *, active: bool = True, tenant_id: Optional[str] = None
    ) -> Tenant:
        tenant_id = tenant_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenant (id, name, active) VALUES (%s, %s, %s) RETURNING *",
                    (tenant_id, name, active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "id"})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def set_tenant_active(self, tenant_id: str, active: bool) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET active = %s WHERE id = %s RETURNING *",
                (active, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # accounts
    def find_account_by_email_in_tenant(
        self, tenant_id: Optional[str], email: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                _ACCOUNT_SELECT
                + " WHERE a.email = %s AND a.tenant_id IS NOT DISTINCT FROM %s",
                (email, tenant_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def find_accounts_by_email(self, email: str) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                _ACCOUNT_SELECT + " WHERE a.email = %s ORDER BY a.created_at",
                (email,),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def find_account_by_id(
        self, account_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        query = _ACCOUNT_SELECT + " WHERE a.id = %s"
        params: list[Any] = [account_id]
        if tenant_id is not None:
            query += " AND a.tenant_id = %s"
            params.append(tenant_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._account_from_row(row) if row else None

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
        """Insert the account and its profile; with ``invitation_id`` also mark
        that pending invitation accepted, all in one transaction."""
        role = Role(role)
        account_id = str(uuid.uuid4())
        fields = dict(profile or {})
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO account (id, tenant_id, email, name, role, secret_hash)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, tenant_id, email, name, role.value, secret_hash),
                ).fetchone()
                conn.execute(
                    "INSERT INTO account_profile (account_id, role, fields) VALUES (%s, %s, %s)",
                    (account_id, role.value, json.dumps(fields)),
                )
                if invitation_id is not None:
                    accepted = conn.execute(
                        """
                        UPDATE invitation SET status = %s, accepted_at = now()
                        WHERE id = %s AND status = %s RETURNING id
                        """,
                        (
                            InvitationStatus.ACCEPTED.value,
                            invitation_id,
                            InvitationStatus.PENDING.value,
                        ),
                    ).fetchone()
                    if not accepted:
                        raise ConstraintViolation(
                            "invitation is no longer pending", {"field": "invitation"}
                        )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists in tenant", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"})
        return self._account_from_row({**row, "profile": fields})

    def _update_returning(
        self, assignments: str, params: Iterable[Any], account_id: str, tenant_id: Optional[str]
    ) -> Optional[Account]:
        query = f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s"
        values = [*params, account_id]
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            values.append(tenant_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING id", values).fetchone()
        if not row:
            return None
        return self.find_account_by_id(account_id)

    def update_account(
        self,
        account_id: str,
        tenant_id: Optional[str],
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        assignments: list[str] = []
        params: list[Any] = []
        if name is not None:
            assignments.append("name = %s")
            params.append(name)
        if email is not None:
            assignments.append("email = %s")
            params.append(email)
        if not assignments:
            return self.find_account_by_id(account_id, tenant_id)
        try:
            return self._update_returning(", ".join(assignments), params, account_id, tenant_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists in tenant", {"field": "email"})

    def soft_deactivate(self, account_id: str, tenant_id: Optional[str]) -> Optional[Account]:
        return self._update_returning("deactivated_at = now()", [], account_id, tenant_id)

    def reactivate(self, account_id: str, tenant_id: Optional[str]) -> Optional[Account]:
        return self._update_returning("deactivated_at = NULL", [], account_id, tenant_id)

    def set_secret_hash(self, account_id: str, secret_hash: str) -> Optional[Account]:
        return self._update_returning("secret_hash = %s", [secret_hash], account_id, None)

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
        clauses = ["a.role = ANY(%s)"]
        params: list[Any] = [[Role(r).value for r in roles]]
        if tenant_id is not None:
            clauses.append("a.tenant_id = %s")
            params.append(tenant_id)
        if not include_inactive:
            clauses.append("a.deactivated_at IS NULL")
        if search:
            clauses.append("(a.name ILIKE %s OR a.email ILIKE %s)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        where = " WHERE " + " AND ".join(clauses)
        with self._connect() as conn:
            total = conn.execute(
                "SELECT count(*) AS n FROM account a" + where, params
            ).fetchone()["n"]
            rows = conn.execute(
                _ACCOUNT_SELECT + where + " ORDER BY lower(a.name) OFFSET %s LIMIT %s",
                [*params, offset, limit],
            ).fetchall()
        return [self._account_from_row(row) for row in rows], int(total)

    # invitations
    def _insert_invitation(self, conn, **values: Any) -> Dict[str, Any]:
        return conn.execute(
            """
            INSERT INTO invitation (id, tenant_id, email, name, role, token, expires_at, created_by, extra)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                str(uuid.uuid4()),
                values["tenant_id"],
                values["email"],
                values["name"],
                Role(values["role"]).value,
                values["token"],
                values["expires_at"],
                values.get("created_by"),
                json.dumps(values.get("extra") or {}),
            ),
        ).fetchone()

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
        try:
            with self._connect() as conn:
                row = self._insert_invitation(
                    conn,
                    tenant_id=tenant_id,
                    email=email,
                    name=name,
                    role=role,
                    token=token,
                    expires_at=expires_at,
                    created_by=created_by,
                    extra=extra,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token already exists", {"field": "token"})
        return self._invitation_from_row(row)

    def get_invitation(
        self, invitation_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Invitation]:
        query = "SELECT * FROM invitation WHERE id = %s"
        params: list[Any] = [invitation_id]
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params.append(tenant_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._invitation_from_row(row) if row else None

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM invitation WHERE token = %s", (token,)).fetchone()
        return self._invitation_from_row(row) if row else None

    def set_invitation_status(
        self,
        invitation_id: str,
        status: InvitationStatus,
        *,
        accepted_at: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE invitation SET status = %s, accepted_at = COALESCE(%s, accepted_at)
                WHERE id = %s RETURNING *
                """,
                (InvitationStatus(status).value, accepted_at, invitation_id),
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def supersede_invitation(
        self, invitation_id: str, *, token: str, expires_at: datetime, created_by: Optional[str]
    ) -> Invitation:
        """Cancel ``invitation_id`` and create its pending replacement in one transaction."""
        try:
            with self._connect() as conn, conn.transaction():
                old = conn.execute(
                    "UPDATE invitation SET status = %s WHERE id = %s RETURNING *",
                    (InvitationStatus.CANCELLED.value, invitation_id),
                ).fetchone()
                if not old:
                    raise ConstraintViolation("invitation does not exist", {"field": "id"})
                row = self._insert_invitation(
                    conn,
                    tenant_id=old["tenant_id"],
                    email=old["email"],
                    name=old["name"],
                    role=old["role"],
                    token=token,
                    expires_at=expires_at,
                    created_by=created_by or old.get("created_by"),
                    extra=_json_field(old.get("extra")),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token already exists", {"field": "token"})
        return self._invitation_from_row(row)

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
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if status is not None:
            status = InvitationStatus(status)
            if status == InvitationStatus.PENDING:
                clauses.append("status = 'pending' AND expires_at > %s")
                params.append(now)
            elif status == InvitationStatus.EXPIRED:
                clauses.append("(status = 'expired' OR (status = 'pending' AND expires_at <= %s))")
                params.append(now)
            else:
                clauses.append("status = %s")
                params.append(status.value)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._connect() as conn:
            total = conn.execute(
                "SELECT count(*) AS n FROM invitation" + where, params
            ).fetchone()["n"]
            rows = conn.execute(
                "SELECT * FROM invitation" + where + " ORDER BY created_at DESC OFFSET %s LIMIT %s",
                [*params, offset, limit],
            ).fetchall()
        return [self._invitation_from_row(row) for row in rows], int(total)
