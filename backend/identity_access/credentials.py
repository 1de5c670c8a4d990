"""
Credential vault for the owner's Google Classroom token pair.

Why:
    Roster operations need a valid bearer token; the provider rotates tokens
    on refresh. Instead of a callback hooked into a shared client instance,
    the vault performs an explicit check after each refresh and persists any
    rotated value before the token is handed back to the caller.

Rules:
    - A rotated refresh token always overwrites the stored one, and is
      persisted even when the same response lacks a usable access token.
    - A refresh that returns only a new access token leaves the stored refresh
      token untouched.
    - One `save_owner` write per refresh; none when nothing changed.
    - Refreshes for one owner are serialized by an owner-scoped lock; the last
      successful refresh wins.

Security: Never log tokens. Owner ids are logged as tails only.
"""
from __future__ import annotations

import asyncio
import logging
import time
import weakref
from typing import Awaitable, Callable, Mapping, Optional, Tuple, TypeVar

from classroom.ports import TransientIOError, Unauthorized

from .domain import CredentialRecord, Owner
from .oauth import OAuthClient, TokenEndpointError
from .stores import OwnerStoreProtocol

logger = logging.getLogger("rollcall.identity_access")

T = TypeVar("T")

EXPIRY_SKEW_SECONDS = 60


class CredentialsMissing(Exception):
    """Owner never completed the external authorization (or is unknown)."""

    code = "credentials_missing"

    def __init__(self, owner_id: str):
        super().__init__(self.code)
        self.owner_id = owner_id


class CredentialVault:
    def __init__(
        self,
        owners: OwnerStoreProtocol,
        oauth: OAuthClient,
        *,
        expiry_skew_seconds: int = EXPIRY_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._owners = owners
        self._oauth = oauth
        self._skew = expiry_skew_seconds
        self._clock = clock
        # Entries live only while a caller holds or awaits the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock

    def _load(self, owner_id: str) -> Tuple[Owner, CredentialRecord]:
        owner = self._owners.get_owner(owner_id)
        if owner is None or owner.credentials is None or not owner.credentials.access_token:
            raise CredentialsMissing(owner_id)
        return owner, owner.credentials

    def _expired(self, creds: CredentialRecord) -> bool:
        if creds.expires_at is None:
            return False
        return self._clock() >= creds.expires_at - self._skew

    async def get_bearer_token(self, owner_id: str) -> str:
        """Return a bearer token, refreshing first when the stored one expired."""
        _, creds = self._load(owner_id)
        if creds.refresh_token and self._expired(creds):
            return await self.refresh(owner_id, stale_token=creds.access_token)
        return creds.access_token

    async def refresh(self, owner_id: str, *, stale_token: Optional[str] = None) -> str:
        """Exchange the refresh token and persist whatever the provider rotated.

        `stale_token` is the access token the caller saw rejected or expired;
        when another request already replaced it, the newer token is returned
        without a second round trip.
        """
        async with self._lock(owner_id):
            owner, creds = self._load(owner_id)
            if stale_token is not None and creds.access_token != stale_token and not self._expired(creds):
                return creds.access_token
            if not creds.refresh_token:
                raise Unauthorized("refresh_token_missing")
            try:
                tokens = await self._oauth.refresh_access_token(refresh_token=creds.refresh_token)
            except TokenEndpointError as exc:
                logger.warning("Token refresh failed owner=%s err=%s", owner_id[-6:], exc.code)
                if exc.code == "token_endpoint_unavailable":
                    raise TransientIOError(exc.code) from exc
                raise Unauthorized(exc.code) from exc

            updated = creds.rotated(
                access_token=tokens.get("access_token"),  # type: ignore[arg-type]
                refresh_token=tokens.get("refresh_token"),  # type: ignore[arg-type]
                expires_at=tokens.get("expires_at"),  # type: ignore[arg-type]
            )
            if updated != creds:
                owner.credentials = updated
                self._owners.save_owner(owner)
                logger.info(
                    "Credentials rotated owner=%s access=%s refresh=%s",
                    owner_id[-6:],
                    updated.access_token != creds.access_token,
                    updated.refresh_token != creds.refresh_token,
                )
            if not tokens.get("access_token"):
                raise Unauthorized("access_token_missing")
            return updated.access_token

    async def call(self, owner_id: str, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run `operation(token)` with one silent refresh on a rejected bearer.

        A second rejection is surfaced as `Unauthorized`; there is no
        re-authorization loop.
        """
        token = await self.get_bearer_token(owner_id)
        try:
            return await operation(token)
        except Unauthorized:
            _, creds = self._load(owner_id)
            if not creds.refresh_token:
                raise
            logger.info("Bearer rejected; refreshing owner=%s", owner_id[-6:])
        fresh = await self.refresh(owner_id, stale_token=token)
        return await operation(fresh)

    async def store_authorization(self, owner_id: str, tokens: Mapping[str, object]) -> CredentialRecord:
        """Persist tokens from a completed consent flow.

        Keeps the previously stored refresh token when the provider omits one.
        """
        access = tokens.get("access_token")
        if not access:
            raise ValueError("access_token_missing")
        async with self._lock(owner_id):
            owner = self._owners.get_owner(owner_id)
            if owner is None:
                raise LookupError("owner_not_found")
            previous = owner.credentials
            refresh = tokens.get("refresh_token") or (previous.refresh_token if previous else None)
            expires_at = tokens.get("expires_at")
            owner.credentials = CredentialRecord(
                access_token=str(access),
                refresh_token=str(refresh) if refresh else None,
                expires_at=float(expires_at) if isinstance(expires_at, (int, float)) else None,
            )
            self._owners.save_owner(owner)
            logger.info("Classroom account linked owner=%s offline=%s", owner_id[-6:], bool(refresh))
            return owner.credentials
