"""
Classroom roster routes (router-only module).

Why:
    Expose the roster engine over HTTP. Handlers stay thin: resolve the caller
    from the session, check roster ownership, call the engine, and translate
    error codes into status codes.

Behavior:
    - 401 `credentials_missing` / `unauthorized` when the owner has not linked
      (or must re-link) the Google account.
    - 404 for unknown or foreign rosters and unknown remote courses.
    - 409 `already_imported` / `roster_conflict`.
    - 400 `quota_exceeded` / `not_externally_linked` / invalid input.
    - 502 `remote_error`, 503 `transient_io_error`.

Security:
    All responses carry `Cache-Control: private, no-store` because they expose
    owner-scoped data.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from classroom.ports import ClassroomError, NotFound, RemoteError, TransientIOError, Unauthorized
from identity_access.credentials import CredentialsMissing
from teaching.roster import ClassRoster, Member, RosterConflict, StudentInput
from teaching.services.quota import QuotaExceeded
from teaching.services.roster_sync import AlreadyImported, NotExternallyLinked, RosterNotFound
from web.wiring import get_services

classroom_router = APIRouter(tags=["Classroom"])
logger = logging.getLogger("rollcall.web")


def _json_private(payload, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers={"Cache-Control": "private, no-store"})


def _error(code: str, status_code: int, detail: Optional[str] = None) -> JSONResponse:
    body = {"error": code}
    if detail:
        body["detail"] = detail
    return _json_private(body, status_code=status_code)


def _current_owner(request: Request) -> Optional[str]:
    user = getattr(request.state, "user", None)
    if isinstance(user, dict):
        return user.get("owner_id")
    return None


def _error_response(exc: Exception) -> JSONResponse:
    """Map a domain or remote failure to the JSON error contract."""
    if isinstance(exc, CredentialsMissing):
        return _error(exc.code, 401, "link_google_account")
    if isinstance(exc, Unauthorized):
        return _error(exc.code, 401, "relink_google_account")
    if isinstance(exc, (NotFound, RosterNotFound)):
        return _error("not_found", 404)
    if isinstance(exc, (AlreadyImported, RosterConflict)):
        return _error(exc.code, 409)
    if isinstance(exc, QuotaExceeded):
        return _error(exc.code, 400, f"{exc.kind}:{exc.count}/{exc.ceiling}")
    if isinstance(exc, NotExternallyLinked):
        return _error(exc.code, 400)
    if isinstance(exc, RemoteError):
        return _error(exc.code, 502, exc.message)
    if isinstance(exc, TransientIOError):
        return _error(exc.code, 503)
    if isinstance(exc, ClassroomError):
        return _error(exc.code, 502)
    if isinstance(exc, ValueError):
        return _error("bad_request", 400, str(exc))
    raise exc


_DOMAIN_ERRORS = (
    ClassroomError,
    CredentialsMissing,
    RosterConflict,
    QuotaExceeded,
    AlreadyImported,
    NotExternallyLinked,
    RosterNotFound,
    ValueError,
)


def _owned_roster(owner_id: str, roster_id: str) -> Optional[ClassRoster]:
    return get_services().rosters.find_roster(roster_id=roster_id, owner_id=owner_id)


def _serialize_course(course) -> dict:
    return {
        "id": course.id,
        "name": course.name,
        "section": course.section,
        "description": course.description,
        "state": course.state,
    }


# ----------------------------- Payloads -------------------------------------


class ImportCoursePayload(BaseModel):
    course_id: str = Field(..., min_length=1, max_length=128)


class SyncStudentsPayload(BaseModel):
    class_id: str = Field(..., min_length=1)


class CreateCoursePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    section: str = Field(..., min_length=1, max_length=100)
    subject: str = Field(..., min_length=1, max_length=100)
    create_remote: bool = True

    @field_validator("name", "section", "subject")
    @classmethod
    def _strip(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class StudentPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)


class AddStudentsPayload(BaseModel):
    class_id: str = Field(..., min_length=1)
    students: List[StudentPayload] = Field(..., min_length=1)


class RosterStudentPayload(BaseModel):
    roll_no: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)


class ImportStudentsPayload(BaseModel):
    class_id: str = Field(..., min_length=1)
    students: List[RosterStudentPayload] = Field(..., min_length=1)
    add_to_google_classroom: bool = False


# ----------------------------- Handlers -------------------------------------


@classroom_router.get("/api/classroom/courses")
async def list_courses(request: Request):
    """List the caller's Google Classroom courses (teacher role on the remote)."""
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    try:
        courses = await get_services().engine.list_external_courses(owner_id)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private([_serialize_course(c) for c in courses])


@classroom_router.get("/api/classroom/courses/{course_id}/students")
async def list_course_students(request: Request, course_id: str):
    """Preview a remote course's students in import order; stores nothing."""
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    try:
        preview = await get_services().engine.preview_external_roster(owner_id, course_id)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private(preview.to_dict())


@classroom_router.post("/api/classroom/import-course")
async def import_course(request: Request, payload: ImportCoursePayload):
    """Import a remote course as a linked roster.

    Behavior:
        - 201 with the roster on success
        - 400 when the class quota is exhausted
        - 409 when the course was already imported by the caller
    """
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    try:
        roster = await get_services().engine.import_external_course(owner_id, payload.course_id)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private(roster.to_dict(), status_code=201)


@classroom_router.post("/api/classroom/sync-students")
async def sync_students(request: Request, payload: SyncStudentsPayload):
    """Replace the roster's members with the current remote roster."""
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    if _owned_roster(owner_id, payload.class_id) is None:
        return _error("not_found", 404)
    try:
        outcome = await get_services().engine.sync_roster(payload.class_id)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private(outcome.to_dict())


@classroom_router.post("/api/classroom/create-course")
async def create_course(request: Request, payload: CreateCoursePayload):
    """Create a Google Classroom course and its linked roster.

    Behavior:
        - 201 with the linked roster on success
        - 401 when the Google account is not (or no longer) linked
        - 502/503 when the remote creation fails; nothing is stored
        - `create_remote: false` creates a local-only roster without any remote call
    """
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    engine = get_services().engine
    try:
        if payload.create_remote:
            roster = await engine.create_external_course(owner_id, payload.name, payload.section, payload.subject)
        else:
            roster = await engine.create_roster(owner_id, payload.name, payload.section, payload.subject)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private(roster.to_dict(), status_code=201)


@classroom_router.post("/api/classroom/add-students")
async def add_students(request: Request, payload: AddStudentsPayload):
    """Invite students to the linked course and append the new ones."""
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    if _owned_roster(owner_id, payload.class_id) is None:
        return _error("not_found", 404)
    students = [StudentInput(display_name=s.name, email_address=s.email) for s in payload.students]
    try:
        outcome = await get_services().engine.add_students(payload.class_id, students)
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    return _json_private(outcome.to_dict())


@classroom_router.post("/api/classroom/import-students")
async def import_students(request: Request, payload: ImportStudentsPayload):
    """Merge a roll-numbered batch; optionally invite it to the linked course."""
    owner_id = _current_owner(request)
    if not owner_id:
        return _error("unauthenticated", 401)
    if _owned_roster(owner_id, payload.class_id) is None:
        return _error("not_found", 404)
    members = [Member(roll_number=s.roll_no, display_name=s.name, email_address=s.email) for s in payload.students]
    try:
        outcome = await get_services().engine.merge_students(
            payload.class_id,
            members,
            propagate_to_remote=payload.add_to_google_classroom,
        )
    except _DOMAIN_ERRORS as exc:
        return _error_response(exc)
    if outcome.invitation_failures:
        logger.info(
            "Import finished with invitation failures roster=%s failed=%d",
            payload.class_id[-6:],
            len(outcome.invitation_failures),
        )
    return _json_private(outcome.to_dict())
