"""
Roster domain types and the roster store contract.

Terms:
- Roster: local student list of a class, optionally linked to an external course.
- Member: one student, identified locally by roll number and externally by email.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import FrozenSet, List, Optional, Protocol, Sequence, Tuple


@dataclass(frozen=True)
class Member:
    roll_number: int
    display_name: str
    email_address: str

    def to_dict(self) -> dict:
        return {"roll_number": self.roll_number, "display_name": self.display_name, "email_address": self.email_address}

    @classmethod
    def from_dict(cls, data: dict) -> "Member":
        return cls(
            roll_number=int(data["roll_number"]),
            display_name=str(data.get("display_name") or ""),
            email_address=str(data.get("email_address") or ""),
        )


@dataclass(frozen=True)
class StudentInput:
    """Student supplied without a roll number; one is assigned on add."""

    display_name: str
    email_address: str


@dataclass
class ClassRoster:
    id: str
    owner_id: str
    name: str
    section: str
    subject: str
    external_course_id: Optional[str] = None
    external_linked: bool = False
    last_synced_at: Optional[datetime] = None
    members: List[Member] = field(default_factory=list)
    version: int = 0

    def __post_init__(self) -> None:
        if bool(self.external_course_id) != bool(self.external_linked):
            raise ValueError("invalid_external_link")
        rolls = [m.roll_number for m in self.members]
        if len(rolls) != len(set(rolls)):
            raise ValueError("duplicate_roll_number")

    def with_members(self, members: Sequence[Member], *, synced_at: Optional[datetime] = None) -> "ClassRoster":
        """Return a copy with a new member list (validated by __post_init__)."""
        return replace(
            self,
            members=list(members),
            last_synced_at=synced_at if synced_at is not None else self.last_synced_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "section": self.section,
            "subject": self.subject,
            "external_course_id": self.external_course_id,
            "external_linked": self.external_linked,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "members": [m.to_dict() for m in self.members],
            "version": self.version,
        }


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one sync/merge call; never persisted."""

    roster: ClassRoster
    invitation_failures: FrozenSet[str]
    synced_at: Optional[datetime]
    skipped: Tuple[str, ...] = ()

    @property
    def members_after(self) -> List[Member]:
        return list(self.roster.members)

    def to_dict(self) -> dict:
        return {
            "roster_id": self.roster.id,
            "members": [m.to_dict() for m in self.roster.members],
            "invitation_failures": sorted(self.invitation_failures),
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "skipped": list(self.skipped),
        }


@dataclass(frozen=True)
class RosterPreview:
    """Remote roster as an import would number it; never persisted."""

    course_id: str
    members: Tuple[Member, ...]
    skipped: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "course_id": self.course_id,
            "members": [m.to_dict() for m in self.members],
            "skipped": list(self.skipped),
        }


class RosterConflict(Exception):
    """Roster changed since it was read; the write was rejected."""

    code = "roster_conflict"

    def __init__(self, roster_id: str):
        super().__init__(self.code)
        self.roster_id = roster_id


class RosterStoreProtocol(Protocol):
    def find_roster(
        self,
        *,
        roster_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        external_course_id: Optional[str] = None,
    ) -> Optional[ClassRoster]:
        ...

    def save_roster(self, roster: ClassRoster) -> ClassRoster:
        """Insert or compare-and-set update; returns the roster with bumped version.

        Raises RosterConflict when the stored version differs from `roster.version`.
        """
        ...

    def count_rosters(self, owner_id: str) -> int:
        ...
