"Rollcall roster sync"
from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from identity_access.stores import SessionStore, StateStore
from web.config import ensure_secure_config_on_startup, load_settings
from web.wiring import build_services, get_services, set_services


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via ROLLCALL_ENABLE_DOTENV (default true outside
      pytest).
    """
    import sys

    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("ROLLCALL_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


try:
    from dotenv import load_dotenv

    if _should_load_dotenv():
        load_dotenv()
except ImportError:
    pass

logger = logging.getLogger("rollcall.web")

SETTINGS = load_settings()
# Minimal production safety checks (fail-fast on insecure config)
ensure_secure_config_on_startup(SETTINGS)

SESSION_COOKIE_NAME = "rollcall_session"
SESSION_STORE = SessionStore()
STATE_STORE = StateStore()

set_services(build_services(SETTINGS))

app = FastAPI(title="Rollcall", description="Classroom roster sync", version="0.1.0")

from web.routes.auth import auth_router
from web.routes.classroom import classroom_router


def _is_public_path(path: str) -> bool:
    return path == "/auth/classroom/callback" or path == "/health"


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    """Resolve the session cookie into `request.state.user`.

    Sessions are issued by the hosting application; this service only reads
    them. API calls without a session get a JSON 401.
    """
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    rec = SESSION_STORE.get(sid) if sid else None
    if rec is not None:
        request.state.user = {"owner_id": rec.owner_id, "email": rec.email}
    elif not _is_public_path(request.url.path):
        headers = {"Cache-Control": "private, no-store"}
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    return response


@app.get("/health")
async def health():
    services = get_services()
    backend = "postgres" if services.settings.database_url else "memory"
    return JSONResponse({"status": "ok", "stores": backend}, headers={"Cache-Control": "no-store"})


app.include_router(auth_router)
app.include_router(classroom_router)
