"""
Configuration and startup security checks for Rollcall.

Why: Settings are read once into an immutable value and passed explicitly to
the components that need them (OAuth client, stores, engine). Nothing below
the web adapter reads environment variables on its own, so tests can build
several configurations side by side.

Permissions: The caller needs no special privileges. The guard simply reads
the settings and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from identity_access.domain import (
    DEFAULT_CLASS_CEILING,
    DEFAULT_EVALUATION_CEILING,
    DEFAULT_EVALUATOR_CEILING,
    RosterOwnerLimits,
)
from identity_access.oauth import OAuthConfig


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise SystemExit(f"Refusing to start: {key} must be an integer (got {raw!r}).")


@dataclass(frozen=True)
class RollcallSettings:
    environment: str
    google_client_id: str
    google_client_secret: str
    google_callback_url: str
    database_url: Optional[str]
    classroom_api_base: str
    http_timeout_seconds: float
    profile_concurrency: int
    default_limits: RosterOwnerLimits

    @property
    def oauth(self) -> OAuthConfig:
        return OAuthConfig(
            client_id=self.google_client_id,
            client_secret=self.google_client_secret,
            redirect_uri=self.google_callback_url,
        )


def load_settings(env: Mapping[str, str] | None = None) -> RollcallSettings:
    """Build settings from a mapping (defaults to the process environment)."""
    env = os.environ if env is None else env
    timeout_raw = (env.get("ROLLCALL_HTTP_TIMEOUT") or "10").strip()
    try:
        timeout = float(timeout_raw)
    except ValueError:
        raise SystemExit(f"Refusing to start: ROLLCALL_HTTP_TIMEOUT must be a number (got {timeout_raw!r}).")
    return RollcallSettings(
        environment=(env.get("ROLLCALL_ENV") or "dev").lower(),
        google_client_id=(env.get("GOOGLE_CLIENT_ID") or "").strip(),
        google_client_secret=(env.get("GOOGLE_CLIENT_SECRET") or "").strip(),
        google_callback_url=(env.get("GOOGLE_CALLBACK_URL") or "http://localhost:8100/auth/classroom/callback").strip(),
        database_url=(env.get("DATABASE_URL") or "").strip() or None,
        classroom_api_base=(env.get("CLASSROOM_API_BASE") or "https://classroom.googleapis.com/v1").strip(),
        http_timeout_seconds=timeout,
        profile_concurrency=max(1, _int(env, "ROLLCALL_PROFILE_CONCURRENCY", 4)),
        default_limits=RosterOwnerLimits(
            class_ceiling=_int(env, "ROLLCALL_DEFAULT_CLASS_LIMIT", DEFAULT_CLASS_CEILING),
            evaluator_ceiling=_int(env, "ROLLCALL_DEFAULT_EVALUATOR_LIMIT", DEFAULT_EVALUATOR_CEILING),
            evaluation_ceiling=_int(env, "ROLLCALL_DEFAULT_EVALUATION_LIMIT", DEFAULT_EVALUATION_CEILING),
        ),
    )


def ensure_secure_config_on_startup(settings: RollcallSettings) -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only; development remains permissive):
    - Google OAuth client id and secret must be set and not placeholders.
    - The OAuth callback must use https.
    - DATABASE_URL must be set and must not explicitly disable TLS.
    """
    if not _is_prod_like(settings.environment):
        return

    if not settings.google_client_id:
        raise SystemExit("Refusing to start: GOOGLE_CLIENT_ID is unset in production.")
    secret = settings.google_client_secret
    if not secret or secret.upper().startswith("CHANGE_ME"):
        raise SystemExit("Refusing to start: GOOGLE_CLIENT_SECRET is unset or a placeholder in production.")

    if not settings.google_callback_url.lower().startswith("https://"):
        raise SystemExit("Refusing to start: GOOGLE_CALLBACK_URL must use https in production.")

    dsn = settings.database_url or ""
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is required in production (in-memory stores lose tokens).")
    if re.search(r"sslmode\s*=\s*disable", dsn):
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
