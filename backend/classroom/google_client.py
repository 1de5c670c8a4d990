"""
Google Classroom REST adapter implementing the ExternalRosterClient port.

Design:
- Framework-agnostic; async via httpx so profile lookups suspend instead of
  blocking the event loop.
- Every call receives the bearer token explicitly. Token lifecycle belongs to
  the credential vault, not to this adapter.
- Remote error bodies ({"error": {"code", "message", "status"}}) are mapped
  into the classroom error taxonomy; nothing leaks httpx exceptions upward.

Security: Never log the bearer token.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .ports import (
    CourseSpec,
    NotFound,
    RemoteCourse,
    RemoteError,
    RemoteMember,
    RemoteProfile,
    TransientIOError,
    Unauthorized,
)

logger = logging.getLogger("rollcall.classroom")

CLASSROOM_API_BASE = "https://classroom.googleapis.com/v1"
_MAX_PAGES = 50


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or f"http_{resp.status_code}"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or err.get("status") or resp.status_code)
    if isinstance(err, str):
        return err
    return f"http_{resp.status_code}"


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    message = _error_message(resp)
    if resp.status_code == 401:
        raise Unauthorized(message)
    if resp.status_code == 404:
        raise NotFound(message)
    raise RemoteError(resp.status_code, message)


def _course_from_json(data: Dict[str, Any]) -> RemoteCourse:
    return RemoteCourse(
        id=str(data.get("id") or ""),
        name=str(data.get("name") or ""),
        section=data.get("section") or None,
        description=data.get("description") or None,
        state=data.get("courseState") or None,
    )


class GoogleClassroomClient:
    """Thin async client for the endpoints the roster engine consumes."""

    def __init__(
        self,
        *,
        base_url: str = CLASSROOM_API_BASE,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http
        self._timeout = timeout

    def _hdr(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                resp = await self._http.request(method, url, headers=self._hdr(token), params=params, json=json)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as http:
                    resp = await http.request(method, url, headers=self._hdr(token), params=params, json=json)
        except httpx.TransportError as exc:
            logger.warning("Classroom request failed: %s %s err=%s", method, path, exc.__class__.__name__)
            raise TransientIOError(exc.__class__.__name__) from exc
        _raise_for_status(resp)
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteError(resp.status_code, "invalid_json") from exc
        return body if isinstance(body, dict) else {}

    async def list_courses(self, token: str) -> List[RemoteCourse]:
        courses: List[RemoteCourse] = []
        params: Dict[str, Any] = {"teacherId": "me"}
        for _ in range(_MAX_PAGES):
            body = await self._request("GET", "/courses", token, params=params)
            courses.extend(_course_from_json(c) for c in body.get("courses") or [] if isinstance(c, dict))
            page = body.get("nextPageToken")
            if not page:
                break
            params = {"teacherId": "me", "pageToken": page}
        return courses

    async def get_course(self, token: str, course_id: str) -> RemoteCourse:
        body = await self._request("GET", f"/courses/{course_id}", token)
        return _course_from_json(body)

    async def create_course(self, token: str, spec: CourseSpec) -> RemoteCourse:
        payload = {
            "name": spec.name,
            "section": spec.section,
            "description": spec.subject,
            "ownerId": "me",
            "courseState": "ACTIVE",
            **spec.extra,
        }
        body = await self._request("POST", "/courses", token, json=payload)
        course = _course_from_json(body)
        if not course.id:
            raise RemoteError(502, "course_id_missing")
        return course

    async def list_members(self, token: str, course_id: str) -> List[RemoteMember]:
        """List student entries in the order the remote returns them."""
        members: List[RemoteMember] = []
        params: Dict[str, Any] = {}
        for _ in range(_MAX_PAGES):
            body = await self._request("GET", f"/courses/{course_id}/students", token, params=params or None)
            for s in body.get("students") or []:
                if isinstance(s, dict) and s.get("userId"):
                    members.append(RemoteMember(user_id=str(s["userId"])))
            page = body.get("nextPageToken")
            if not page:
                break
            params = {"pageToken": page}
        return members

    async def get_profile(self, token: str, member_id: str) -> RemoteProfile:
        body = await self._request("GET", f"/userProfiles/{member_id}", token)
        name = body.get("name") or {}
        full_name = name.get("fullName") if isinstance(name, dict) else None
        email = body.get("emailAddress") or None
        return RemoteProfile(display_name=str(full_name or ""), email_address=email)

    async def create_invitation(self, token: str, course_id: str, email_address: str) -> dict:
        payload = {"courseId": course_id, "role": "STUDENT", "userId": email_address}
        return await self._request("POST", "/invitations", token, json=payload)
