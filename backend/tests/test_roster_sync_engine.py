"""
Roster sync engine: import, sync, merge and add flows against fakes.

Covers the behavioral rules the HTTP layer relies on: create-once import,
roll numbers by listing order, remote-wins sync, per-member failures that do
not block persistence, and quota checks before any remote call.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.tests.utils.fakes import (
    FakeClassroomClient,
    build_engine,
    course_with_students,
    make_owner,
)
from classroom.ports import RemoteCourse, RemoteError, RemoteProfile, TransientIOError, Unauthorized
from identity_access.credentials import CredentialsMissing
from teaching.roster import ClassRoster, Member, RosterConflict, StudentInput
from teaching.services.quota import QuotaExceeded
from teaching.services.roster_sync import (
    IMPORTED_SECTION,
    IMPORTED_SUBJECT,
    AlreadyImported,
    NotExternallyLinked,
    RosterNotFound,
)


pytestmark = pytest.mark.anyio("asyncio")

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _env(client=None, **kwargs):
    return build_engine(client=client or FakeClassroomClient(), clock=lambda: NOW, **kwargs)


def _linked(env, members=(), *, roster_id="r1", owner_id="owner-1", course_id="c1") -> ClassRoster:
    return env.rosters.save_roster(
        ClassRoster(
            id=roster_id,
            owner_id=owner_id,
            name="7b",
            section="A",
            subject="Math",
            external_course_id=course_id,
            external_linked=True,
            members=list(members),
        )
    )


def _emails(roster: ClassRoster):
    return [(m.roll_number, m.email_address) for m in roster.members]


# --- import ---------------------------------------------------------------------


@pytest.mark.anyio
async def test_import_numbers_members_by_listing_order_not_completion_order():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org", "u2": "b@x.org", "u3": "c@x.org"})
    client.profile_delays = {"u1": 0.03, "u2": 0.01}
    env = _env(client)

    roster = await env.engine.import_external_course("owner-1", "c1")

    assert _emails(roster) == [(1, "a@x.org"), (2, "b@x.org"), (3, "c@x.org")]
    assert roster.external_linked and roster.external_course_id == "c1"
    assert roster.last_synced_at == NOW


@pytest.mark.anyio
async def test_import_is_deterministic_for_the_same_listing():
    results = []
    for concurrency in (1, 8):
        client = FakeClassroomClient()
        course_with_students(client, "c1", {"u3": "c@x.org", "u1": "a@x.org", "u2": "b@x.org"})
        client.profile_delays = {"u3": 0.02}
        env = _env(client, profile_concurrency=concurrency)
        roster = await env.engine.import_external_course("owner-1", "c1")
        results.append(_emails(roster))
    assert results[0] == results[1] == [(1, "c@x.org"), (2, "a@x.org"), (3, "b@x.org")]


@pytest.mark.anyio
async def test_second_import_of_same_course_fails_without_remote_calls():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    env = _env(client)
    await env.engine.import_external_course("owner-1", "c1")
    calls_before = len(client.seen_tokens)

    with pytest.raises(AlreadyImported) as exc:
        await env.engine.import_external_course("owner-1", "c1")

    assert exc.value.code == "already_imported"
    assert len(client.seen_tokens) == calls_before
    assert env.rosters.count_rosters("owner-1") == 1


@pytest.mark.anyio
async def test_same_course_can_be_imported_by_another_owner():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    env = _env(client, owners=[make_owner("owner-1"), make_owner("owner-2")])
    await env.engine.import_external_course("owner-1", "c1")
    roster = await env.engine.import_external_course("owner-2", "c1")
    assert roster.owner_id == "owner-2"


@pytest.mark.anyio
async def test_import_skips_members_without_email_and_leaves_no_gaps():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org", "u2": None, "u3": "c@x.org", "u4": "d@x.org"})
    client.profiles["u4"] = RemoteError(403, "forbidden")
    env = _env(client)

    roster = await env.engine.import_external_course("owner-1", "c1")

    assert _emails(roster) == [(1, "a@x.org"), (2, "c@x.org")]


@pytest.mark.anyio
async def test_import_collapses_repeated_listing_entries():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org", "u2": "b@x.org"})
    client.members["c1"] = ["u1", "u2", "u1"]
    env = _env(client)
    roster = await env.engine.import_external_course("owner-1", "c1")
    assert _emails(roster) == [(1, "a@x.org"), (2, "b@x.org")]


@pytest.mark.anyio
async def test_import_applies_default_section_and_subject():
    client = FakeClassroomClient()
    client.courses["c1"] = RemoteCourse(id="c1", name="Physics")
    env = _env(client)
    roster = await env.engine.import_external_course("owner-1", "c1")
    assert (roster.name, roster.section, roster.subject) == ("Physics", IMPORTED_SECTION, IMPORTED_SUBJECT)
    assert roster.members == []


@pytest.mark.anyio
async def test_import_over_quota_fails_before_any_remote_call():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    env = _env(client, owners=[make_owner(class_ceiling=2)])
    for rid in ("x1", "x2"):
        env.rosters.save_roster(ClassRoster(id=rid, owner_id="owner-1", name="n", section="s", subject="x"))

    with pytest.raises(QuotaExceeded):
        await env.engine.import_external_course("owner-1", "c1")
    assert client.seen_tokens == []
    assert env.rosters.count_rosters("owner-1") == 2


@pytest.mark.anyio
async def test_import_remote_failure_persists_nothing():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    client.list_members_error = TransientIOError("ConnectError")
    env = _env(client)

    with pytest.raises(TransientIOError):
        await env.engine.import_external_course("owner-1", "c1")
    assert env.rosters.count_rosters("owner-1") == 0


@pytest.mark.anyio
async def test_import_aborts_when_profile_lookup_is_unauthorized():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org", "u2": "b@x.org"})
    client.profiles["u2"] = Unauthorized("revoked")
    env = _env(client, owners=[make_owner(refresh_token=None)])

    with pytest.raises(Unauthorized):
        await env.engine.import_external_course("owner-1", "c1")
    assert env.rosters.count_rosters("owner-1") == 0


@pytest.mark.anyio
async def test_import_without_linked_account_raises_credentials_missing():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    env = _env(client, owners=[make_owner(access_token=None)])
    with pytest.raises(CredentialsMissing):
        await env.engine.import_external_course("owner-1", "c1")


@pytest.mark.anyio
async def test_preview_matches_import_numbering_without_writing():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u3": "c@x.org", "u2": None, "u1": "a@x.org"})
    client.profile_delays = {"u3": 0.02}
    env = _env(client)

    preview = await env.engine.preview_external_roster("owner-1", " c1 ")

    assert preview.course_id == "c1"
    assert [(m.roll_number, m.email_address) for m in preview.members] == [(1, "c@x.org"), (2, "a@x.org")]
    assert preview.skipped == ("u2",)
    assert env.rosters.count_rosters("owner-1") == 0
    assert env.owners.writes == 0


# --- sync -----------------------------------------------------------------------


@pytest.mark.anyio
async def test_sync_replaces_local_members_with_remote_roster():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org", "u2": "b@x.org"})
    env = _env(client)
    _linked(
        env,
        [
            Member(1, "Local Only", "local@x.org"),
            Member(2, "Renamed Locally", "b@x.org"),
        ],
    )

    outcome = await env.engine.sync_roster("r1")

    assert _emails(outcome.roster) == [(1, "a@x.org"), (2, "b@x.org")]
    assert outcome.roster.members[1].display_name == "Student u2"
    assert outcome.synced_at == NOW
    assert outcome.invitation_failures == frozenset()
    stored = env.rosters.find_roster(roster_id="r1")
    assert stored.last_synced_at == NOW
    assert stored.version == 2


@pytest.mark.anyio
async def test_sync_of_unknown_or_unlinked_roster_is_rejected_locally():
    client = FakeClassroomClient()
    env = _env(client)
    env.rosters.save_roster(ClassRoster(id="local", owner_id="owner-1", name="n", section="s", subject="x"))

    with pytest.raises(RosterNotFound):
        await env.engine.sync_roster("missing")
    with pytest.raises(NotExternallyLinked) as exc:
        await env.engine.sync_roster("local")
    assert exc.value.code == "not_externally_linked"
    assert client.seen_tokens == []


@pytest.mark.anyio
async def test_sync_remote_failure_leaves_roster_untouched():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    client.list_members_error = RemoteError(500, "backendError")
    env = _env(client)
    _linked(env, [Member(1, "Kept", "kept@x.org")])

    with pytest.raises(RemoteError):
        await env.engine.sync_roster("r1")
    stored = env.rosters.find_roster(roster_id="r1")
    assert _emails(stored) == [(1, "kept@x.org")]
    assert stored.version == 1


# --- merge ----------------------------------------------------------------------


@pytest.mark.anyio
async def test_merge_overwrites_by_roll_number_and_appends_new_rolls():
    env = _env()
    _linked(env, [Member(1, "Ann", "ann@x.org"), Member(2, "Ben", "ben@x.org")])

    outcome = await env.engine.merge_students(
        "r1",
        [Member(2, "Benjamin", "benjamin@x.org"), Member(5, "Eve", "eve@x.org")],
    )

    assert _emails(outcome.roster) == [(1, "ann@x.org"), (2, "benjamin@x.org"), (5, "eve@x.org")]
    assert outcome.invitation_failures == frozenset()
    assert env.client.invitations == []


@pytest.mark.anyio
async def test_merge_records_failed_invitation_and_still_persists():
    client = FakeClassroomClient()
    client.invitation_errors["bad@x.org"] = RemoteError(400, "FAILED_PRECONDITION")
    env = _env(client)
    _linked(env)

    outcome = await env.engine.merge_students(
        "r1",
        [Member(1, "Ok", "ok@x.org"), Member(2, "Bad", "bad@x.org"), Member(3, "Fine", "fine@x.org")],
        propagate_to_remote=True,
    )

    assert outcome.invitation_failures == frozenset({"bad@x.org"})
    assert [e for _, e in client.invitations] == ["ok@x.org", "fine@x.org"]
    stored = env.rosters.find_roster(roster_id="r1")
    assert len(stored.members) == 3
    assert outcome.synced_at == NOW


@pytest.mark.anyio
async def test_merge_credential_failure_marks_remaining_and_persists():
    client = FakeClassroomClient(accepted_tokens=set())
    env = _env(client, owners=[make_owner(refresh_token=None)])
    _linked(env)

    outcome = await env.engine.merge_students(
        "r1",
        [Member(1, "A", "a@x.org"), Member(2, "B", "b@x.org")],
        propagate_to_remote=True,
    )

    assert outcome.invitation_failures == frozenset({"a@x.org", "b@x.org"})
    assert outcome.synced_at is None
    assert len(env.rosters.find_roster(roster_id="r1").members) == 2


@pytest.mark.anyio
async def test_merge_on_unlinked_roster_skips_invitations():
    env = _env()
    env.rosters.save_roster(ClassRoster(id="local", owner_id="owner-1", name="n", section="s", subject="x"))
    outcome = await env.engine.merge_students("local", [Member(1, "A", "a@x.org")], propagate_to_remote=True)
    assert env.client.invitations == []
    assert _emails(outcome.roster) == [(1, "a@x.org")]


@pytest.mark.anyio
async def test_merge_rejects_invalid_members_before_writing():
    env = _env()
    _linked(env)
    with pytest.raises(ValueError):
        await env.engine.merge_students("r1", [Member(0, "Zero", "z@x.org")])
    with pytest.raises(ValueError):
        await env.engine.merge_students("r1", [Member(1, "  ", "z@x.org")])
    assert env.rosters.find_roster(roster_id="r1").version == 1


# --- add ------------------------------------------------------------------------


@pytest.mark.anyio
async def test_add_students_dedups_by_email_and_continues_roll_numbers():
    env = _env()
    _linked(env, [Member(1, "Ann", "ann@x.org"), Member(4, "Dan", "dan@x.org")])

    outcome = await env.engine.add_students(
        "r1",
        [
            StudentInput("Ann Again", "ANN@x.org"),
            StudentInput("Eve", "eve@x.org"),
            StudentInput("Eve Twin", "eve@x.org"),
            StudentInput("Fay", "fay@x.org"),
        ],
    )

    assert _emails(outcome.roster) == [(1, "ann@x.org"), (4, "dan@x.org"), (5, "eve@x.org"), (6, "fay@x.org")]
    assert [e for _, e in env.client.invitations] == ["eve@x.org", "fay@x.org"]
    assert outcome.synced_at == NOW


@pytest.mark.anyio
async def test_add_students_records_per_member_invitation_failure():
    client = FakeClassroomClient()
    client.invitation_errors["eve@x.org"] = RemoteError(409, "ALREADY_EXISTS")
    env = _env(client)
    _linked(env)

    outcome = await env.engine.add_students("r1", [StudentInput("Eve", "eve@x.org"), StudentInput("Fay", "fay@x.org")])

    assert outcome.invitation_failures == frozenset({"eve@x.org"})
    assert _emails(env.rosters.find_roster(roster_id="r1")) == [(1, "eve@x.org"), (2, "fay@x.org")]


@pytest.mark.anyio
async def test_add_students_aborts_on_missing_credentials():
    env = _env(owners=[make_owner(access_token=None)])
    _linked(env)

    with pytest.raises(CredentialsMissing):
        await env.engine.add_students("r1", [StudentInput("Eve", "eve@x.org")])
    assert env.rosters.find_roster(roster_id="r1").members == []


@pytest.mark.anyio
async def test_add_students_requires_linked_roster():
    env = _env()
    env.rosters.save_roster(ClassRoster(id="local", owner_id="owner-1", name="n", section="s", subject="x"))
    with pytest.raises(NotExternallyLinked):
        await env.engine.add_students("local", [StudentInput("Eve", "eve@x.org")])


# --- create ---------------------------------------------------------------------


@pytest.mark.anyio
async def test_create_external_course_persists_empty_linked_roster():
    env = _env()
    roster = await env.engine.create_external_course("owner-1", " Biology ", "B", "Science")
    assert roster.external_linked and roster.external_course_id == "gc-1"
    assert roster.name == "Biology"
    assert roster.members == []
    assert env.client.created_courses[0].subject == "Science"


@pytest.mark.anyio
async def test_create_roster_degrades_to_local_when_remote_fails():
    client = FakeClassroomClient(create_course_error=RemoteError(403, "PERMISSION_DENIED"))
    env = _env(client)
    roster = await env.engine.create_roster("owner-1", "History", "H", "Humanities", create_remote=True)
    assert not roster.external_linked
    assert roster.external_course_id is None
    assert env.rosters.count_rosters("owner-1") == 1


@pytest.mark.anyio
async def test_create_respects_class_quota():
    env = _env(owners=[make_owner(class_ceiling=1)])
    await env.engine.create_roster("owner-1", "One", "A", "S")
    with pytest.raises(QuotaExceeded):
        await env.engine.create_external_course("owner-1", "Two", "A", "S")
    assert env.client.created_courses == []


# --- concurrency ----------------------------------------------------------------


@pytest.mark.anyio
async def test_stale_roster_write_is_rejected():
    client = FakeClassroomClient()
    course_with_students(client, "c1", {"u1": "a@x.org"})
    env = _env(client)
    _linked(env)
    stale = env.rosters.find_roster(roster_id="r1")

    await env.engine.sync_roster("r1")

    with pytest.raises(RosterConflict):
        env.rosters.save_roster(stale.with_members([Member(1, "Late", "late@x.org")]))


@pytest.mark.anyio
async def test_profile_lookups_are_resolved_for_every_member():
    client = FakeClassroomClient()
    students = {f"u{i}": f"s{i}@x.org" for i in range(1, 11)}
    course_with_students(client, "c1", students)
    client.profiles["u5"] = RemoteProfile(display_name="", email_address="s5@x.org")
    env = _env(client, profile_concurrency=2)

    roster = await env.engine.import_external_course("owner-1", "c1")

    assert [m.roll_number for m in roster.members] == list(range(1, 11))
    assert roster.members[4].display_name == "s5@x.org"
