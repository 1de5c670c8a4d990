"""
Google Classroom account linking routes (router-only module).

Why:
    The roster engine acts on behalf of an owner, with the owner's Google
    tokens. These two endpoints run the OAuth consent flow and hand the
    resulting token pair to the credential vault.

Notes:
    - The state store lives in `web.main` and is imported inside the handlers
      so tests can swap it per case.
    - The state value is bound to the owner who started the flow; a callback
      for another session is rejected.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from identity_access.oauth import TokenEndpointError
from web.wiring import get_services

auth_router = APIRouter(tags=["Auth"])
logger = logging.getLogger("rollcall.web")

# In-app redirect targets only: no scheme, no double slashes, no traversal.
INAPP_PATH_PATTERN = re.compile(r"^(?!.*//)(?!.*\.\.)/[A-Za-z0-9._\-/]*$")
MAX_INAPP_REDIRECT_LEN = 256


def _safe_redirect(value: Optional[str]) -> Optional[str]:
    if not value or len(value) > MAX_INAPP_REDIRECT_LEN:
        return None
    return value if INAPP_PATH_PATTERN.match(value) else None


def _private_error(code: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code}, status_code=status_code, headers={"Cache-Control": "private, no-store"})


@auth_router.get("/auth/classroom/link")
async def classroom_link(request: Request, redirect: Optional[str] = None):
    """Start the consent flow for the signed-in owner.

    Behavior:
        - 302 to the Google consent page (offline access, forced consent)
        - 401 without a session
    """
    from web import main

    user = getattr(request.state, "user", None)
    if not isinstance(user, dict) or not user.get("owner_id"):
        return _private_error("unauthenticated", 401)
    rec = main.STATE_STORE.create(owner_id=user["owner_id"], redirect=_safe_redirect(redirect))
    url = get_services().oauth.build_authorization_url(state=rec.state, login_hint=user.get("email") or None)
    return RedirectResponse(url=url, status_code=302, headers={"Cache-Control": "no-store"})


@auth_router.get("/auth/classroom/callback")
async def classroom_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """Finish the consent flow and store the token pair.

    Behavior:
        - 302 to the stored in-app redirect (or `/`) on success
        - 400 on missing/expired state, provider error or missing code
        - 403 when the state belongs to another owner
        - 502 when the token endpoint fails
    """
    from web import main

    rec = main.STATE_STORE.pop_valid(state) if state else None
    if rec is None:
        return _private_error("invalid_state", 400)
    if error:
        logger.info("Consent declined owner=%s err=%s", rec.owner_id[-6:], error)
        return _private_error("access_denied", 400)
    if not code:
        return _private_error("invalid_code", 400)
    user = getattr(request.state, "user", None)
    if isinstance(user, dict) and user.get("owner_id") and user["owner_id"] != rec.owner_id:
        return _private_error("forbidden", 403)

    services = get_services()
    try:
        tokens = await services.oauth.exchange_code_for_tokens(code=code)
    except TokenEndpointError as exc:
        logger.warning("Code exchange failed owner=%s err=%s", rec.owner_id[-6:], exc.code)
        status = 502 if exc.code == "token_endpoint_unavailable" else 400
        return _private_error("token_exchange_failed", status)
    try:
        await services.vault.store_authorization(rec.owner_id, tokens)
    except LookupError:
        return _private_error("not_found", 404)
    return RedirectResponse(url=rec.redirect or "/", status_code=302, headers={"Cache-Control": "no-store"})
