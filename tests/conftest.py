import os
import sys
from datetime import datetime, timezone
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Ensure the repository root is on sys.path so tests can import the bedboard package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('BEDBOARD_JWT_SECRET', 'test-jwt-secret')
os.environ.setdefault('BEDBOARD_DATABASE_URL', 'sqlite://')
os.environ.setdefault('LOG_LEVEL', 'WARNING')

from bedboard.store import DirectoryStore, build_engine  # noqa: E402
from tests.support import SAMPLE_PROVIDERS, FixedClock, put_all  # noqa: E402


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FixedClock) -> DirectoryStore:
    """A fresh in-memory directory; call ``await store.start()`` before use."""

    return DirectoryStore(build_engine('sqlite://'), clock=clock)


@pytest.fixture
def api_client(store: DirectoryStore) -> Iterator[TestClient]:
    from bedboard import main

    main.app.state.store = store
    try:
        with TestClient(main.app) as client:
            client.portal.call(put_all, store, SAMPLE_PROVIDERS)
            yield client
    finally:
        del main.app.state.store
