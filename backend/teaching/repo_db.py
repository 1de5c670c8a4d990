"""
Postgres-backed repository for class rosters.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- The member list is one JSONB document column; writes replace the whole
  document, guarded by a `version` compare-and-set so a stale writer gets a
  RosterConflict instead of silently overwriting a concurrent sync.
- A unique (owner_id, external_course_id) constraint backs the create-once
  import rule at the database level.
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple
import os
import re

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

from .roster import ClassRoster, Member, RosterConflict

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

ROSTERS_DDL = """
create table if not exists {table} (
  id text primary key,
  owner_id text not null,
  name text not null,
  section text not null,
  subject text not null,
  external_course_id text,
  external_linked boolean not null default false,
  last_synced_at timestamptz,
  members jsonb not null default '[]'::jsonb,
  version integer not null default 1,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now(),
  constraint roster_external_link_consistent check ((external_course_id is null) = (not external_linked)),
  constraint roster_external_course_once unique (owner_id, external_course_id)
)
"""

_COLUMNS_SQL = (
    "id, owner_id, name, section, subject, external_course_id, external_linked, last_synced_at, members, version"
)


def _dsn() -> str:
    """Resolve the DSN for roster storage."""
    for dsn in (os.getenv("ROSTER_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBRosterRepo")


def _row_to_roster(row: Tuple) -> ClassRoster:
    members_raw = row[8] or []
    members = [Member.from_dict(m) for m in members_raw if isinstance(m, dict)]
    return ClassRoster(
        id=str(row[0]),
        owner_id=str(row[1]),
        name=row[2],
        section=row[3],
        subject=row[4],
        external_course_id=row[5],
        external_linked=bool(row[6]),
        last_synced_at=row[7],
        members=members,
        version=int(row[9]),
    )


class DBRosterRepo:
    def __init__(self, dsn: Optional[str] = None, table: str = "public.class_rosters") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBRosterRepo")
        self._dsn = dsn or _dsn()
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table

    def ensure_schema(self) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(ROSTERS_DDL.format(table=self._table))

    def find_roster(
        self,
        *,
        roster_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        external_course_id: Optional[str] = None,
    ) -> Optional[ClassRoster]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("id", roster_id), ("owner_id", owner_id), ("external_course_id", external_course_id)):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if not clauses:
            raise ValueError("roster_filter_required")
        where = " and ".join(clauses)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_COLUMNS_SQL} from {self._table} where {where} limit 1", tuple(params))
                row = cur.fetchone()
        return _row_to_roster(row) if row else None

    def save_roster(self, roster: ClassRoster) -> ClassRoster:
        members = Json([m.to_dict() for m in roster.members])
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                if roster.version == 0:
                    cur.execute(
                        f"insert into {self._table} ({_COLUMNS_SQL}) "
                        f"values (%s, %s, %s, %s, %s, %s, %s, %s, %s, 1) "
                        f"on conflict do nothing returning version",
                        (
                            roster.id,
                            roster.owner_id,
                            roster.name,
                            roster.section,
                            roster.subject,
                            roster.external_course_id,
                            roster.external_linked,
                            roster.last_synced_at,
                            members,
                        ),
                    )
                else:
                    cur.execute(
                        f"update {self._table} set name = %s, section = %s, subject = %s, "
                        f"external_course_id = %s, external_linked = %s, last_synced_at = %s, members = %s, "
                        f"version = version + 1, updated_at = now() "
                        f"where id = %s and version = %s returning version",
                        (
                            roster.name,
                            roster.section,
                            roster.subject,
                            roster.external_course_id,
                            roster.external_linked,
                            roster.last_synced_at,
                            members,
                            roster.id,
                            roster.version,
                        ),
                    )
                row = cur.fetchone()
        if not row:
            raise RosterConflict(roster.id)
        roster.version = int(row[0])
        return roster

    def count_rosters(self, owner_id: str) -> int:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select count(*) from {self._table} where owner_id = %s", (owner_id,))
                row = cur.fetchone()
        return int(row[0]) if row else 0
