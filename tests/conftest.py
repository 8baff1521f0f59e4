# tests/conftest.py
from __future__ import annotations

import itertools
import os
import tempfile
import uuid

import pytest

# must be set before quoteflow.config is imported anywhere
_DB_DIR = tempfile.mkdtemp(prefix="quoteflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("AUTH_MODE", "dev")

from quoteflow.db import Base, SessionLocal, engine, init_db  # noqa: E402

_tenant_seq = itertools.count(uuid.uuid4().int % 1_000_000 * 1000)


@pytest.fixture(scope="session", autouse=True)
def _schema():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def tenant_id() -> int:
    return next(_tenant_seq)
