from __future__ import annotations

import pytest

from peerlink.core.config import Settings, get_settings
from peerlink.persistence.db import Database
from peerlink.services.identity import IdentityResolver
from peerlink.services.ledger import MessageLedger
from peerlink.services.telemetry import reset_telemetry
from peerlink.tests.utils.tokens import TEST_JWT_SECRET


@pytest.fixture(autouse=True)
def isolate_process_state() -> None:
    # Counters and cached settings are process-global; keep them per test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/peerlink.db",
        auth_mode="jwt-hs256",
        auth_jwt_secret=TEST_JWT_SECRET,
        store_timeout_ms=5000,
        store_failure_cache_s=30,
    )


@pytest.fixture
async def db(settings: Settings) -> Database:
    # File-backed SQLite so every session in a test sees the same store.
    database = Database(settings.database_url, failure_ttl_s=settings.store_failure_cache_s)
    yield database
    await database.dispose()


@pytest.fixture
def ledger(db: Database, settings: Settings) -> MessageLedger:
    return MessageLedger(db, settings=settings)


@pytest.fixture
def make_resolver(db: Database, settings: Settings):
    def _make(verifier=None) -> IdentityResolver:
        return IdentityResolver(db, verifier, settings=settings)

    return _make
