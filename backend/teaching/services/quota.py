"""Quota gate for create-like operations.

Why:
    Owners may only create a bounded number of classes (and evaluators,
    evaluations). The gate compares a fresh count against the owner's
    ceiling before any resource is created: count >= ceiling rejects,
    strictly less allows.
"""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Mapping, Optional, Tuple

from identity_access.domain import RESOURCE_KINDS, RosterOwnerLimits
from identity_access.stores import OwnerStoreProtocol

from teaching.roster import RosterStoreProtocol


class QuotaExceeded(Exception):
    code = "quota_exceeded"

    def __init__(self, kind: str, count: int, ceiling: int):
        super().__init__(self.code)
        self.kind = kind
        self.count = count
        self.ceiling = ceiling


@dataclass(frozen=True)
class QuotaDecision:
    kind: str
    count: int
    ceiling: int

    @property
    def allowed(self) -> bool:
        return self.count < self.ceiling


class QuotaGate:
    """Check owner ceilings against counts read at call time.

    `counters` supplies counts for kinds other than `class` (evaluators and
    evaluations live in other contexts); unknown counters count as zero.
    """

    def __init__(
        self,
        owners: OwnerStoreProtocol,
        rosters: RosterStoreProtocol,
        *,
        counters: Optional[Mapping[str, Callable[[str], int]]] = None,
        default_limits: RosterOwnerLimits = RosterOwnerLimits(),
    ) -> None:
        self._owners = owners
        self._rosters = rosters
        self._counters: Dict[str, Callable[[str], int]] = dict(counters or {})
        self._default_limits = default_limits
        # Entries live only while a caller holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _count(self, owner_id: str, kind: str) -> int:
        if kind == "class":
            return self._rosters.count_rosters(owner_id)
        counter = self._counters.get(kind)
        return int(counter(owner_id)) if counter else 0

    def check_ceiling(self, owner_id: str, kind: str) -> QuotaDecision:
        if kind not in RESOURCE_KINDS:
            raise ValueError("invalid_resource_kind")
        owner = self._owners.get_owner(owner_id)
        limits = owner.limits if owner is not None else self._default_limits
        return QuotaDecision(kind=kind, count=self._count(owner_id, kind), ceiling=limits.ceiling_for(kind))

    def ensure(self, owner_id: str, kind: str) -> QuotaDecision:
        decision = self.check_ceiling(owner_id, kind)
        if not decision.allowed:
            raise QuotaExceeded(kind, decision.count, decision.ceiling)
        return decision

    @asynccontextmanager
    async def reserve(self, owner_id: str, kind: str) -> AsyncIterator[QuotaDecision]:
        """Hold an owner+kind lock across the check and the guarded creation.

        Serializes concurrent creators for one owner within this process.
        """
        key = (owner_id, kind)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            yield self.ensure(owner_id, kind)
