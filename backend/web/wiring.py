"""
Composition root: build stores, clients and the roster engine from settings.

Why:
    The web app and the CLI need the same object graph. Building it in one
    place keeps the configuration explicit (no module-level OAuth client) and
    lets tests assemble a graph around fakes.

Persistence:
    Prefers the Postgres-backed stores when DATABASE_URL is set and psycopg is
    importable; falls back to in-memory stores for tests/local offline work.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from classroom.google_client import GoogleClassroomClient
from classroom.ports import ExternalRosterClient
from identity_access.credentials import CredentialVault
from identity_access.oauth import OAuthClient
from identity_access.stores import InMemoryOwnerStore, OwnerStoreProtocol
from teaching.repo_memory import InMemoryRosterRepo
from teaching.roster import RosterStoreProtocol
from teaching.services.quota import QuotaGate
from teaching.services.roster_sync import RosterSyncEngine
from web.config import RollcallSettings

logger = logging.getLogger("rollcall.web")


@dataclass
class Services:
    settings: RollcallSettings
    owners: OwnerStoreProtocol
    rosters: RosterStoreProtocol
    oauth: OAuthClient
    vault: CredentialVault
    client: ExternalRosterClient
    quota: QuotaGate
    engine: RosterSyncEngine


def build_stores(settings: RollcallSettings) -> Tuple[OwnerStoreProtocol, RosterStoreProtocol]:
    """Prefer DB-backed stores; fall back to in-memory if unavailable."""
    if settings.database_url:
        try:
            from identity_access.stores_db import DBOwnerStore
            from teaching.repo_db import DBRosterRepo

            return DBOwnerStore(settings.database_url), DBRosterRepo(settings.database_url)
        except RuntimeError as exc:
            logger.warning("Database stores unavailable (%s); using in-memory fallback", exc)
    return InMemoryOwnerStore(), InMemoryRosterRepo()


def build_services(
    settings: RollcallSettings,
    *,
    owners: Optional[OwnerStoreProtocol] = None,
    rosters: Optional[RosterStoreProtocol] = None,
    client: Optional[ExternalRosterClient] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> Services:
    if owners is None or rosters is None:
        default_owners, default_rosters = build_stores(settings)
        owners = owners or default_owners
        rosters = rosters or default_rosters
    oauth = OAuthClient(settings.oauth, http=http, timeout=settings.http_timeout_seconds)
    vault = CredentialVault(owners, oauth)
    if client is None:
        client = GoogleClassroomClient(
            base_url=settings.classroom_api_base,
            http=http,
            timeout=settings.http_timeout_seconds,
        )
    quota = QuotaGate(owners, rosters, default_limits=settings.default_limits)
    engine = RosterSyncEngine(
        rosters=rosters,
        vault=vault,
        client=client,
        quota=quota,
        profile_concurrency=settings.profile_concurrency,
    )
    return Services(
        settings=settings,
        owners=owners,
        rosters=rosters,
        oauth=oauth,
        vault=vault,
        client=client,
        quota=quota,
        engine=engine,
    )


_SERVICES: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    """Install the service graph used by the HTTP handlers (app startup, tests)."""
    global _SERVICES
    _SERVICES = services


def get_services() -> Services:
    if _SERVICES is None:
        raise RuntimeError("services_not_configured")
    return _SERVICES
