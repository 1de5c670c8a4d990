"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
keep developer shell settings (prod env, live DSNs) out of the suite.
"""
import os
import sys
from pathlib import Path

import pytest


def _isolate_env() -> None:
    """Drop settings that would make `web.main` start against a live setup.

    The app module reads the environment at import time, which happens during
    collection, so this must run before any fixture.
    """
    for var in ("ROLLCALL_ENV", "DATABASE_URL", "ROSTER_DATABASE_URL", "CLASSROOM_API_BASE"):
        os.environ.pop(var, None)


_isolate_env()

# Ensure modules in backend/ (and the repo root for backend.tests.*) are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
for p in (str(REPO_ROOT), str(BACKEND_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_rollcall_env(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven settings deterministic per test; tests opt in explicitly."""
    for var in (
        "ROLLCALL_ENV",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "GOOGLE_CALLBACK_URL",
        "DATABASE_URL",
        "ROSTER_DATABASE_URL",
        "ROLLCALL_HTTP_TIMEOUT",
        "ROLLCALL_PROFILE_CONCURRENCY",
        "ROLLCALL_DEFAULT_CLASS_LIMIT",
        "ROLLCALL_DEFAULT_EVALUATOR_LIMIT",
        "ROLLCALL_DEFAULT_EVALUATION_LIMIT",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
