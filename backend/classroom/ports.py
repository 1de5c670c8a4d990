"""
Ports for the external classroom service: value types, protocol, errors.

Intent:
    Provide a framework-agnostic contract between the roster engine and the
    concrete remote adapter (Google Classroom over REST, or fakes in tests).
    Keeping these definitions in a dedicated module avoids circular imports
    and clarifies boundaries.

Design:
    - Value types: RemoteCourse, RemoteMember, RemoteProfile, CourseSpec
    - Protocol: ExternalRosterClient (every call takes the bearer token)
    - Error taxonomy: each failure kind is its own class with a stable `code`
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol


# ----------------------------- Value types ----------------------------------


@dataclass(frozen=True)
class RemoteCourse:
    id: str
    name: str
    section: Optional[str] = None
    description: Optional[str] = None
    state: Optional[str] = None


@dataclass(frozen=True)
class RemoteMember:
    """One roster entry as listed by the remote course (no PII yet)."""

    user_id: str


@dataclass(frozen=True)
class RemoteProfile:
    display_name: str
    email_address: Optional[str]


@dataclass(frozen=True)
class CourseSpec:
    name: str
    section: str
    subject: str
    extra: dict = field(default_factory=dict)


# ----------------------------- Protocol -------------------------------------


class ExternalRosterClient(Protocol):
    """Capabilities the roster engine needs from the remote classroom."""

    async def list_courses(self, token: str) -> List[RemoteCourse]:
        ...

    async def get_course(self, token: str, course_id: str) -> RemoteCourse:
        ...

    async def create_course(self, token: str, spec: CourseSpec) -> RemoteCourse:
        ...

    async def list_members(self, token: str, course_id: str) -> List[RemoteMember]:
        ...

    async def get_profile(self, token: str, member_id: str) -> RemoteProfile:
        ...

    async def create_invitation(self, token: str, course_id: str, email_address: str) -> dict:
        ...


# ------------------------------ Errors --------------------------------------


class ClassroomError(Exception):
    """Base class for remote classroom failures."""

    code = "classroom_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthorized(ClassroomError):
    """Bearer rejected by the remote; the owner must re-link the account."""

    code = "unauthorized"


class NotFound(ClassroomError):
    code = "not_found"


class RemoteError(ClassroomError):
    """Remote business error, passed through with its status and message."""

    code = "remote_error"

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class TransientIOError(ClassroomError):
    """Network-level failure. Not retried by the engine; callers may retry."""

    code = "transient_io_error"
