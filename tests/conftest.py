"""Shared fixtures: in-memory store, seeded hierarchy, controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from skillgrid.store.database import Database
from skillgrid.store.models import EntityDB, HierarchyNodeDB

START = datetime(2026, 10, 19, 14, 30, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def seed(db: Database) -> None:
    """
    ROOT ─┬─ N1 ── N1a
          ├─ N2
          └─ N3
    Entities E1 and E2, placed under ROOT.
    """
    with db.session() as session:
        session.add_all([
            HierarchyNodeDB(id="ROOT", parent_id=None, level=0, name="Engineering"),
            HierarchyNodeDB(id="N1", parent_id="ROOT", level=1, name="Backend"),
            HierarchyNodeDB(id="N2", parent_id="ROOT", level=1, name="Frontend"),
            HierarchyNodeDB(id="N3", parent_id="ROOT", level=1, name="Data"),
            HierarchyNodeDB(id="N1a", parent_id="N1", level=2, name="Databases"),
        ])
        session.flush()
        session.add_all([
            EntityDB(id="E1", org_path=["ROOT"], attributes={"name": "Ada"}),
            EntityDB(id="E2", org_path=["ROOT"], attributes={"name": "Grace"}),
        ])


@pytest.fixture
def db():
    database = Database("sqlite://", query_timeout_seconds=0)
    database.initialize()
    yield database
    database.engine.dispose()


@pytest.fixture
def seeded_db(db):
    seed(db)
    return db


@pytest.fixture
def clock():
    return FakeClock()
