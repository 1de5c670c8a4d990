"""
Database-backed OwnerStore for production use (Postgres).

Why: Credential rotation must survive restarts and be visible to every
instance. This store persists the owner row, including the embedded OAuth
token pair and the ceilings, with a single upsert per `save_owner` call so a
rotated token pair is never half-written.

Security:
- Intended to be used with a service connection string; the table holds
  refresh tokens and must not be readable by anonymous roles.
- Never log token columns.

Note: This module uses psycopg3. Tests swap in a fake driver.
"""
from __future__ import annotations

from typing import Optional
import os
import re

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .domain import CredentialRecord, Owner, RosterOwnerLimits

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

OWNERS_DDL = """
create table if not exists {table} (
  id text primary key,
  email text not null,
  name text not null default '',
  access_token text,
  refresh_token text,
  token_expires_at double precision,
  class_ceiling integer not null,
  evaluator_ceiling integer not null,
  evaluation_ceiling integer not null,
  updated_at timestamptz not null default now()
)
"""


class DBOwnerStore:
    """Postgres-backed owner store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    table:
        Fully qualified table name. Defaults to `public.roster_owners`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.roster_owners") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBOwnerStore")
        self._dsn = dsn or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBOwnerStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table

    def ensure_schema(self) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(OWNERS_DDL.format(table=self._table))

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select id, email, name, access_token, refresh_token, token_expires_at, "
                    f"class_ceiling, evaluator_ceiling, evaluation_ceiling from {self._table} where id = %s",
                    (owner_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        creds = None
        if row[3]:
            creds = CredentialRecord(
                access_token=row[3],
                refresh_token=row[4] or None,
                expires_at=float(row[5]) if row[5] is not None else None,
            )
        limits = RosterOwnerLimits(
            class_ceiling=int(row[6]),
            evaluator_ceiling=int(row[7]),
            evaluation_ceiling=int(row[8]),
        )
        return Owner(id=row[0], email=row[1], name=row[2] or "", credentials=creds, limits=limits)

    def save_owner(self, owner: Owner) -> None:
        creds = owner.credentials
        params = (
            owner.id,
            owner.email,
            owner.name,
            creds.access_token if creds else None,
            creds.refresh_token if creds else None,
            creds.expires_at if creds else None,
            owner.limits.class_ceiling,
            owner.limits.evaluator_ceiling,
            owner.limits.evaluation_ceiling,
        )
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} (id, email, name, access_token, refresh_token, token_expires_at, "
                    f"class_ceiling, evaluator_ceiling, evaluation_ceiling) "
                    f"values (%s, %s, %s, %s, %s, %s, %s, %s, %s) "
                    f"on conflict (id) do update set email = excluded.email, name = excluded.name, "
                    f"access_token = excluded.access_token, refresh_token = excluded.refresh_token, "
                    f"token_expires_at = excluded.token_expires_at, class_ceiling = excluded.class_ceiling, "
                    f"evaluator_ceiling = excluded.evaluator_ceiling, evaluation_ceiling = excluded.evaluation_ceiling, "
                    f"updated_at = now()",
                    params,
                )
