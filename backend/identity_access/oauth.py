"""
Minimal OAuth 2.0 client for linking an owner's Google Classroom account.

Why: Keep web framework independent logic in a separate module. The web
adapter calls into this client to build the consent URL and exchange the
authorization code; the credential vault calls it to refresh access tokens.

Security: Never log tokens or the client secret. The configuration is passed
in explicitly so several configurations can coexist in one process (tests,
multiple deployments); nothing here reads process-wide state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

CLASSROOM_SCOPES: Tuple[str, ...] = (
    "profile",
    "email",
    "https://www.googleapis.com/auth/classroom.courses",
    "https://www.googleapis.com/auth/classroom.rosters",
    "https://www.googleapis.com/auth/classroom.profile.emails",
    "https://www.googleapis.com/auth/classroom.profile.photos",
)


class TokenEndpointError(Exception):
    """Raised when the token endpoint rejects or cannot serve a request."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str  # e.g., http://localhost:8100/auth/classroom/callback
    auth_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    scopes: Tuple[str, ...] = CLASSROOM_SCOPES


def _now() -> float:
    return time.time()


def parse_token_response(body: Dict[str, object]) -> Dict[str, object]:
    """Normalize a token endpoint response into access/refresh/expires_at.

    Keys with missing or empty values come back as None so callers can tell
    "not rotated" apart from a new value.
    """
    access = body.get("access_token")
    refresh = body.get("refresh_token")
    expires_in = body.get("expires_in")
    expires_at: Optional[float] = None
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        expires_at = _now() + float(expires_in)
    return {
        "access_token": str(access) if access else None,
        "refresh_token": str(refresh) if refresh else None,
        "expires_at": expires_at,
    }


class OAuthClient:
    def __init__(self, config: OAuthConfig, *, http: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.cfg = config
        self._http = http
        self._timeout = timeout

    def build_authorization_url(self, *, state: str, login_hint: Optional[str] = None) -> str:
        """Return the consent URL requesting offline access.

        `prompt=consent` makes the provider issue a refresh token on every
        link, not only on the first one.
        """
        params = {
            "response_type": "code",
            "client_id": self.cfg.client_id,
            "redirect_uri": self.cfg.redirect_uri,
            "scope": " ".join(self.cfg.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{self.cfg.auth_endpoint}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, *, code: str) -> Dict[str, object]:
        """Exchange an authorization code; raises TokenEndpointError on failure."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
            "redirect_uri": self.cfg.redirect_uri,
        }
        body = await self._post_token(data)
        tokens = parse_token_response(body)
        if not tokens["access_token"]:
            raise TokenEndpointError("token_response_invalid")
        return tokens

    async def refresh_access_token(self, *, refresh_token: str) -> Dict[str, object]:
        """Use the refresh token grant.

        The returned mapping may carry a rotated refresh token. It may also lack
        an access token; the caller decides what to persist in that case.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.cfg.client_id,
            "client_secret": self.cfg.client_secret,
        }
        body = await self._post_token(data)
        return parse_token_response(body)

    async def _post_token(self, data: Dict[str, str]) -> Dict[str, object]:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        try:
            if self._http is not None:
                resp = await self._http.post(self.cfg.token_endpoint, data=data, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as http:
                    resp = await http.post(self.cfg.token_endpoint, data=data, headers=headers)
        except httpx.HTTPError as exc:
            raise TokenEndpointError("token_endpoint_unavailable") from exc
        if resp.status_code >= 500:
            raise TokenEndpointError("token_endpoint_unavailable")
        try:
            body = resp.json()
        except ValueError as exc:
            raise TokenEndpointError("token_response_invalid") from exc
        if resp.status_code != 200:
            # Google reports revoked or expired refresh tokens as invalid_grant
            err = body.get("error") if isinstance(body, dict) else None
            raise TokenEndpointError(str(err or "token_request_failed"))
        if not isinstance(body, dict):
            raise TokenEndpointError("token_response_invalid")
        return body
