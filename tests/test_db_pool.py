from __future__ import annotations

import asyncio

import pytest

from orderflow import db
from orderflow.settings import settings


def test_pool_requires_database_url(monkeypatch):
    monkeypatch.setattr(settings, "database_url", None)
    monkeypatch.setattr(db, "_pool", None)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        asyncio.run(db.get_pool())


def test_close_pool_without_pool_is_a_noop(monkeypatch):
    monkeypatch.setattr(db, "_pool", None)
    asyncio.run(db.close_pool())
    assert db._pool is None
