"""
Identity domain: owners, their external-service credentials and limits.

Why:
- Keep the credential record embedded in the owner so a single write persists
  a rotated token pair.
- Centralize default ceilings to avoid drift between owner creation paths.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

# System defaults applied at owner creation time.
DEFAULT_CLASS_CEILING = 3
DEFAULT_EVALUATOR_CEILING = 3
DEFAULT_EVALUATION_CEILING = 100


@dataclass(frozen=True)
class CredentialRecord:
    """OAuth token pair for the owner's external classroom identity.

    `refresh_token` is None when the owner never granted offline access.
    `expires_at` is epoch seconds when the provider reported a lifetime.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def rotated(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[float] = None,
    ) -> "CredentialRecord":
        """Return a copy with every provided value overwriting the stored one."""
        changes: dict = {}
        if access_token:
            changes["access_token"] = access_token
            changes["expires_at"] = expires_at
        if refresh_token:
            changes["refresh_token"] = refresh_token
        return replace(self, **changes) if changes else self


@dataclass(frozen=True)
class RosterOwnerLimits:
    class_ceiling: int = DEFAULT_CLASS_CEILING
    evaluator_ceiling: int = DEFAULT_EVALUATOR_CEILING
    evaluation_ceiling: int = DEFAULT_EVALUATION_CEILING

    def ceiling_for(self, kind: str) -> int:
        try:
            return {
                "class": self.class_ceiling,
                "evaluator": self.evaluator_ceiling,
                "evaluation": self.evaluation_ceiling,
            }[kind]
        except KeyError:
            raise ValueError("invalid_resource_kind") from None


@dataclass
class Owner:
    id: str
    email: str
    name: str = ""
    credentials: Optional[CredentialRecord] = None
    limits: RosterOwnerLimits = field(default_factory=RosterOwnerLimits)


RESOURCE_KINDS = frozenset({"class", "evaluator", "evaluation"})

__all__ = [
    "CredentialRecord",
    "RosterOwnerLimits",
    "Owner",
    "RESOURCE_KINDS",
    "DEFAULT_CLASS_CEILING",
    "DEFAULT_EVALUATOR_CEILING",
    "DEFAULT_EVALUATION_CEILING",
]
