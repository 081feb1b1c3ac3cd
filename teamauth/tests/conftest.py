from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any teamauth module builds its engine.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"teamauth-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = os.environ.get("TEAMAUTH_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["EMAIL_VERIFICATION_EXPOSE_TOKEN"] = "true"

import pytest  # noqa: E402

from teamauth.persistence.db import create_schema, drop_schema, engine  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables.
    await drop_schema()
    await create_schema()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
