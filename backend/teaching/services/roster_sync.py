"""Roster synchronization with the external classroom (import, sync, merge).

Why:
    Keeps a local class roster consistent with a Google Classroom course.
    Web adapters and the CLI stay thin: they resolve the caller and translate
    the error codes raised here.

Behavior:
    - Local preconditions (quota, already imported, linked) are checked before
      any remote call.
    - All remote reads happen before the single roster write, so a failing
      fetch leaves nothing half-written.
    - Roll numbers of imported/synced rosters follow the order of the remote
      listing, starting at 1 without gaps. Profile lookups may finish in any
      order; they never influence numbering.
    - Sync replaces the local member list with the remote snapshot (remote
      wins); local-only edits are dropped and the drop is logged.
    - Per-member failures (profile lookup, invitation) are collected and
      reported; they never block persistence.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from classroom.ports import (
    ClassroomError,
    CourseSpec,
    ExternalRosterClient,
    RemoteCourse,
    RemoteMember,
    RemoteProfile,
    Unauthorized,
)
from identity_access.credentials import CredentialVault, CredentialsMissing
from teaching.roster import (
    ClassRoster,
    Member,
    RosterPreview,
    RosterStoreProtocol,
    StudentInput,
    SyncOutcome,
)
from teaching.services.quota import QuotaGate

logger = logging.getLogger("rollcall.teaching")

IMPORTED_SECTION = "Imported"
IMPORTED_SUBJECT = "Imported from Google Classroom"


class RosterSyncError(Exception):
    """Local precondition failure; `code` is the stable tag for callers."""

    code = "roster_sync_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail


class AlreadyImported(RosterSyncError):
    code = "already_imported"


class NotExternallyLinked(RosterSyncError):
    code = "not_externally_linked"


class RosterNotFound(RosterSyncError):
    code = "roster_not_found"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_text(value: object, code: str) -> str:
    if not isinstance(value, str):
        raise ValueError(code)
    trimmed = value.strip()
    if not trimmed:
        raise ValueError(code)
    return trimmed


def _email_key(email: str) -> str:
    return email.strip().casefold()


def _validate_members(members: Sequence[Member]) -> List[Member]:
    out: List[Member] = []
    for m in members:
        if isinstance(m.roll_number, bool) or not isinstance(m.roll_number, int) or m.roll_number < 1:
            raise ValueError("invalid_roll_number")
        out.append(
            Member(
                roll_number=m.roll_number,
                display_name=_normalize_text(m.display_name, "invalid_display_name"),
                email_address=_normalize_text(m.email_address, "invalid_email_address"),
            )
        )
    return out


class RosterSyncEngine:
    def __init__(
        self,
        *,
        rosters: RosterStoreProtocol,
        vault: CredentialVault,
        client: ExternalRosterClient,
        quota: QuotaGate,
        profile_concurrency: int = 4,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._rosters = rosters
        self._vault = vault
        self._client = client
        self._quota = quota
        self._profile_concurrency = max(1, int(profile_concurrency))
        self._clock = clock
        self._new_id = id_factory

    # --- Remote reads -------------------------------------------------------

    async def list_external_courses(self, owner_id: str) -> List[RemoteCourse]:
        return await self._vault.call(owner_id, self._client.list_courses)

    async def _resolve_profile(self, owner_id: str, member: RemoteMember, gate: asyncio.Semaphore) -> Optional[RemoteProfile]:
        async with gate:
            try:
                return await self._vault.call(owner_id, lambda token: self._client.get_profile(token, member.user_id))
            except Unauthorized:
                raise
            except ClassroomError as exc:
                logger.warning("Profile lookup failed member=%s err=%s", member.user_id[-6:], exc.code)
                return None

    async def _fetch_remote_members(self, owner_id: str, course_id: str) -> Tuple[List[Member], Tuple[str, ...]]:
        """Fetch the remote roster and number it by listing order.

        Members without a resolvable email are skipped; their remote ids are
        returned for the outcome report.
        """
        listing = await self._vault.call(owner_id, lambda token: self._client.list_members(token, course_id))
        unique: List[RemoteMember] = []
        seen: Set[str] = set()
        for entry in listing:
            if entry.user_id not in seen:
                seen.add(entry.user_id)
                unique.append(entry)

        gate = asyncio.Semaphore(self._profile_concurrency)
        results = await asyncio.gather(
            *(self._resolve_profile(owner_id, entry, gate) for entry in unique),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        members: List[Member] = []
        skipped: List[str] = []
        for entry, profile in zip(unique, results):
            if profile is None or not profile.email_address:
                logger.info("Skipping remote member without email member=%s", entry.user_id[-6:])
                skipped.append(entry.user_id)
                continue
            members.append(
                Member(
                    roll_number=len(members) + 1,
                    display_name=profile.display_name or profile.email_address,
                    email_address=profile.email_address,
                )
            )
        return members, tuple(skipped)

    async def _invite_all(
        self,
        owner_id: str,
        course_id: str,
        emails: Iterable[str],
        *,
        tolerate_auth_failure: bool,
    ) -> Tuple[Set[str], bool]:
        """Create one invitation per email; returns (failed emails, completed).

        A single member's failure is recorded and the loop continues. A
        credential-level failure stops the loop: it either propagates or,
        with `tolerate_auth_failure`, marks every remaining email as failed.
        """
        pending = [e for e in emails if e]
        failures: Set[str] = set()
        for idx, email in enumerate(pending):
            try:
                await self._vault.call(
                    owner_id, lambda token, e=email: self._client.create_invitation(token, course_id, e)
                )
            except (CredentialsMissing, Unauthorized) as exc:
                if not tolerate_auth_failure:
                    raise
                logger.warning("Invitations aborted course=%s err=%s", course_id[-6:], exc.code)
                failures.update(pending[idx:])
                return failures, False
            except ClassroomError as exc:
                logger.warning("Invitation failed course=%s err=%s", course_id[-6:], exc.code)
                failures.add(email)
        return failures, True

    # --- Use cases ----------------------------------------------------------

    def _get_roster(self, roster_id: str) -> ClassRoster:
        roster = self._rosters.find_roster(roster_id=roster_id)
        if roster is None:
            raise RosterNotFound(roster_id)
        return roster

    async def import_external_course(self, owner_id: str, external_course_id: str) -> ClassRoster:
        """Create a linked roster from an external course (create-once)."""
        course_id = _normalize_text(external_course_id, "invalid_course_id")
        async with self._quota.reserve(owner_id, "class"):
            if self._rosters.find_roster(owner_id=owner_id, external_course_id=course_id) is not None:
                raise AlreadyImported(course_id)
            course = await self._vault.call(owner_id, lambda token: self._client.get_course(token, course_id))
            members, skipped = await self._fetch_remote_members(owner_id, course_id)
            roster = ClassRoster(
                id=self._new_id(),
                owner_id=owner_id,
                name=course.name or course_id,
                section=course.section or IMPORTED_SECTION,
                subject=course.description or IMPORTED_SUBJECT,
                external_course_id=course_id,
                external_linked=True,
                last_synced_at=self._clock(),
                members=members,
            )
            saved = self._rosters.save_roster(roster)
        logger.info(
            "Imported course=%s roster=%s members=%d skipped=%d",
            course_id[-6:],
            saved.id[-6:],
            len(members),
            len(skipped),
        )
        return saved

    async def preview_external_roster(self, owner_id: str, external_course_id: str) -> RosterPreview:
        """Fetch the remote roster numbered as an import would; writes nothing."""
        course_id = _normalize_text(external_course_id, "invalid_course_id")
        members, skipped = await self._fetch_remote_members(owner_id, course_id)
        return RosterPreview(course_id=course_id, members=tuple(members), skipped=skipped)

    async def sync_roster(self, roster_id: str) -> SyncOutcome:
        """Replace the local member list with the current remote roster."""
        roster = self._get_roster(roster_id)
        if not roster.external_linked or not roster.external_course_id:
            raise NotExternallyLinked(roster_id)
        members, skipped = await self._fetch_remote_members(roster.owner_id, roster.external_course_id)
        remote_emails = {_email_key(m.email_address) for m in members}
        dropped = sum(1 for m in roster.members if _email_key(m.email_address) not in remote_emails)
        if dropped:
            logger.info("Sync drops local-only members roster=%s dropped=%d", roster_id[-6:], dropped)
        synced_at = self._clock()
        saved = self._rosters.save_roster(roster.with_members(members, synced_at=synced_at))
        return SyncOutcome(roster=saved, invitation_failures=frozenset(), synced_at=synced_at, skipped=skipped)

    async def merge_students(
        self,
        roster_id: str,
        members: Sequence[Member],
        propagate_to_remote: bool = False,
    ) -> SyncOutcome:
        """Merge a batch keyed by roll number: same roll overwrites, new roll appends."""
        roster = self._get_roster(roster_id)
        incoming = _validate_members(members)
        by_roll: Dict[int, Member] = {m.roll_number: m for m in roster.members}
        for m in incoming:
            by_roll[m.roll_number] = m

        failures: Set[str] = set()
        synced_at = roster.last_synced_at
        if propagate_to_remote:
            if roster.external_linked and roster.external_course_id:
                failures, completed = await self._invite_all(
                    roster.owner_id,
                    roster.external_course_id,
                    [m.email_address for m in incoming],
                    tolerate_auth_failure=True,
                )
                if completed:
                    synced_at = self._clock()
            else:
                logger.info("Roster not linked; skipping invitations roster=%s", roster_id[-6:])

        saved = self._rosters.save_roster(roster.with_members(list(by_roll.values()), synced_at=synced_at))
        return SyncOutcome(roster=saved, invitation_failures=frozenset(failures), synced_at=synced_at)

    async def add_students(self, roster_id: str, students: Sequence[StudentInput]) -> SyncOutcome:
        """Invite students to the linked course and append the new ones locally.

        Emails already on the roster are skipped; new members get roll numbers
        max(existing) + 1, + 2, ... in input order.
        """
        roster = self._get_roster(roster_id)
        if not roster.external_linked or not roster.external_course_id:
            raise NotExternallyLinked(roster_id)

        known = {_email_key(m.email_address) for m in roster.members}
        next_roll = max((m.roll_number for m in roster.members), default=0)
        added: List[Member] = []
        for s in students:
            email = _normalize_text(s.email_address, "invalid_email_address")
            key = _email_key(email)
            if key in known:
                continue
            known.add(key)
            next_roll += 1
            added.append(
                Member(
                    roll_number=next_roll,
                    display_name=_normalize_text(s.display_name, "invalid_display_name"),
                    email_address=email,
                )
            )

        failures, _ = await self._invite_all(
            roster.owner_id,
            roster.external_course_id,
            [m.email_address for m in added],
            tolerate_auth_failure=False,
        )
        synced_at = self._clock()
        saved = self._rosters.save_roster(roster.with_members(roster.members + added, synced_at=synced_at))
        return SyncOutcome(roster=saved, invitation_failures=frozenset(failures), synced_at=synced_at)

    async def create_external_course(self, owner_id: str, name: str, section: str, subject: str) -> ClassRoster:
        """Create a course in the external classroom and a linked, empty roster."""
        spec = CourseSpec(
            name=_normalize_text(name, "invalid_name"),
            section=_normalize_text(section, "invalid_section"),
            subject=_normalize_text(subject, "invalid_subject"),
        )
        async with self._quota.reserve(owner_id, "class"):
            course = await self._vault.call(owner_id, lambda token: self._client.create_course(token, spec))
            roster = ClassRoster(
                id=self._new_id(),
                owner_id=owner_id,
                name=spec.name,
                section=spec.section,
                subject=spec.subject,
                external_course_id=course.id,
                external_linked=True,
                last_synced_at=self._clock(),
            )
            return self._rosters.save_roster(roster)

    async def create_roster(
        self,
        owner_id: str,
        name: str,
        section: str,
        subject: str,
        *,
        create_remote: bool = False,
    ) -> ClassRoster:
        """Create a local roster; optionally mirror it as an external course.

        A failing remote creation leaves a purely local roster.
        """
        spec = CourseSpec(
            name=_normalize_text(name, "invalid_name"),
            section=_normalize_text(section, "invalid_section"),
            subject=_normalize_text(subject, "invalid_subject"),
        )
        async with self._quota.reserve(owner_id, "class"):
            roster = ClassRoster(
                id=self._new_id(),
                owner_id=owner_id,
                name=spec.name,
                section=spec.section,
                subject=spec.subject,
            )
            if create_remote:
                try:
                    course = await self._vault.call(owner_id, lambda token: self._client.create_course(token, spec))
                except (ClassroomError, CredentialsMissing) as exc:
                    logger.warning("Remote course creation failed owner=%s err=%s", owner_id[-6:], exc.code)
                else:
                    roster.external_course_id = course.id
                    roster.external_linked = True
                    roster.last_synced_at = self._clock()
            return self._rosters.save_roster(roster)
