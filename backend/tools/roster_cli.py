"""Operator commands for the roster sync service.

Why:
    Some operations are run outside a browser session: creating the tables,
    provisioning an owner with custom ceilings, or re-syncing a roster whose
    owner reported stale data.

Usage:
    python -m tools.roster_cli init-db --db-dsn postgresql://...
    python -m tools.roster_cli provision-owner --db-dsn ... --owner-id u1 --email t@example.org
    python -m tools.roster_cli sync --db-dsn ... --roster-id <uuid>

Notes:
    - `--db-dsn` falls back to DATABASE_URL.
    - Sync replaces the local member list with the remote roster (remote wins).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Optional

import click

from classroom.ports import ClassroomError
from identity_access.credentials import CredentialsMissing
from identity_access.domain import RosterOwnerLimits
from identity_access.stores import provision_owner
from teaching.roster import RosterConflict
from teaching.services.quota import QuotaExceeded
from teaching.services.roster_sync import RosterSyncError
from web.config import load_settings
from web.wiring import Services, build_services

_CLI_ERRORS = (ClassroomError, CredentialsMissing, RosterConflict, RosterSyncError, QuotaExceeded)


def _build_services(db_dsn: Optional[str]) -> Services:
    settings = load_settings()
    if db_dsn:
        settings = replace(settings, database_url=db_dsn)
    if not settings.database_url:
        raise click.ClickException("--db-dsn or DATABASE_URL is required")
    return build_services(settings)


def _echo_json(payload: dict) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli() -> None:
    """Roster sync operator tools."""


@cli.command("init-db")
@click.option("--db-dsn", envvar="DATABASE_URL", required=True, help="Postgres DSN (owner of the schema).")
def init_db(db_dsn: str) -> None:
    """Create the owner and roster tables if they do not exist."""
    from identity_access.stores_db import DBOwnerStore
    from teaching.repo_db import DBRosterRepo

    try:
        DBOwnerStore(db_dsn).ensure_schema()
        DBRosterRepo(db_dsn).ensure_schema()
    except RuntimeError as exc:
        raise click.ClickException(str(exc))
    click.echo("schema ready")


@cli.command("provision-owner")
@click.option("--db-dsn", envvar="DATABASE_URL", required=False, help="Postgres DSN.")
@click.option("--owner-id", required=True)
@click.option("--email", required=True)
@click.option("--name", default="", show_default=False)
@click.option("--class-limit", type=int, default=None, help="Override the class ceiling.")
def provision(db_dsn: Optional[str], owner_id: str, email: str, name: str, class_limit: Optional[int]) -> None:
    """Create an owner with default (or overridden) ceilings."""
    services = _build_services(db_dsn)
    limits = services.settings.default_limits
    if class_limit is not None:
        if class_limit < 0:
            raise click.BadParameter("must be >= 0", param_hint="--class-limit")
        limits = RosterOwnerLimits(
            class_ceiling=class_limit,
            evaluator_ceiling=limits.evaluator_ceiling,
            evaluation_ceiling=limits.evaluation_ceiling,
        )
    owner = provision_owner(services.owners, owner_id=owner_id, email=email, name=name, limits=limits)
    _echo_json(
        {
            "id": owner.id,
            "email": owner.email,
            "linked": owner.credentials is not None,
            "class_ceiling": owner.limits.class_ceiling,
        }
    )


@cli.command("sync")
@click.option("--db-dsn", envvar="DATABASE_URL", required=False, help="Postgres DSN.")
@click.option("--roster-id", required=True, help="Local roster id.")
def sync(db_dsn: Optional[str], roster_id: str) -> None:
    """Re-sync one linked roster from Google Classroom."""
    services = _build_services(db_dsn)
    try:
        outcome = asyncio.run(services.engine.sync_roster(roster_id))
    except _CLI_ERRORS as exc:
        raise click.ClickException(f"sync failed: {exc.code}")
    _echo_json(outcome.to_dict())


@cli.command("import-course")
@click.option("--db-dsn", envvar="DATABASE_URL", required=False, help="Postgres DSN.")
@click.option("--owner-id", required=True)
@click.option("--course-id", required=True, help="Google Classroom course id.")
def import_course(db_dsn: Optional[str], owner_id: str, course_id: str) -> None:
    """Import a Google Classroom course as a linked roster for an owner."""
    services = _build_services(db_dsn)
    try:
        roster = asyncio.run(services.engine.import_external_course(owner_id, course_id))
    except _CLI_ERRORS as exc:
        raise click.ClickException(f"import failed: {exc.code}")
    _echo_json(roster.to_dict())


if __name__ == "__main__":  # pragma: no cover
    cli()
