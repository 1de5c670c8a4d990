"""
In-memory roster repository for tests and local offline work.

Mirrors the compare-and-set semantics of the Postgres repo so conflict
handling behaves the same in both.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from typing import Dict, Optional

from .roster import ClassRoster, RosterConflict


class InMemoryRosterRepo:
    def __init__(self) -> None:
        self.rosters: Dict[str, ClassRoster] = {}
        self.writes = 0

    def find_roster(
        self,
        *,
        roster_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        external_course_id: Optional[str] = None,
    ) -> Optional[ClassRoster]:
        for roster in self.rosters.values():
            if roster_id is not None and roster.id != roster_id:
                continue
            if owner_id is not None and roster.owner_id != owner_id:
                continue
            if external_course_id is not None and roster.external_course_id != external_course_id:
                continue
            return copy.deepcopy(roster)
        return None

    def save_roster(self, roster: ClassRoster) -> ClassRoster:
        current = self.rosters.get(roster.id)
        stored_version = current.version if current else 0
        if stored_version != roster.version:
            raise RosterConflict(roster.id)
        if current is None and roster.external_course_id is not None:
            for other in self.rosters.values():
                if other.owner_id == roster.owner_id and other.external_course_id == roster.external_course_id:
                    raise RosterConflict(roster.id)
        saved = replace(roster, members=list(roster.members), version=roster.version + 1)
        self.rosters[roster.id] = saved
        self.writes += 1
        return copy.deepcopy(saved)

    def count_rosters(self, owner_id: str) -> int:
        return sum(1 for r in self.rosters.values() if r.owner_id == owner_id)
