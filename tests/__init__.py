#!/usr/bin/env python3
"""
Test suite configuration and utilities.

Repository, dispatcher and delivery tests run against an in-memory SQLite
database, so no external service is needed:

    python -m pytest tests/ -v

    # Using unittest
    python -m unittest discover tests -v
"""

import contextlib
import unittest
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import Base, Monitor, Alert, Result
from database.repository import AlertStore

FIXED_NOW = datetime(2026, 10, 18, 9, 5, tzinfo=timezone.utc)


def make_sqlite_engine():
    """One shared in-memory connection so every session sees the same data."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


class SqliteStoreTestCase(unittest.TestCase):
    """Base class giving each test a fresh schema and an alert_uow() equivalent."""

    def setUp(self):
        self.engine = make_sqlite_engine()
        self.Session = sessionmaker(bind=self.engine, autoflush=False)

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    @contextlib.contextmanager
    def uow(self):
        session = self.Session()
        try:
            yield AlertStore(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Fixtures ---

    def add_monitor(self, name: str = "Acme", user_id: str = "user-1", is_active: bool = True) -> Monitor:
        with self.uow() as store:
            monitor = store.alerts.create_monitor(user_id=user_id, name=name, is_active=is_active)
            store.db.expunge(monitor)
        return monitor

    def add_alert(
        self,
        monitor: Monitor,
        channel: str = "slack",
        frequency: str = "instant",
        destination: str = "https://hooks.slack.com/services/T000/B000/XXXX",
        destination_type: Optional[str] = "slack",
        is_active: bool = True
    ) -> Alert:
        with self.uow() as store:
            alert = store.alerts.create_alert(
                monitor_id=monitor.id,
                channel=channel,
                frequency=frequency,
                destination=destination,
                destination_type=destination_type,
                is_active=is_active,
            )
            store.db.expunge(alert)
        return alert

    def add_result(self, monitor: Monitor, title: str = "Test Post", **fields) -> Result:
        values = {
            'platform': "reddit",
            'source_url': "https://reddit.com/r/test/1",
            'title': title,
        }
        values.update(fields)
        with self.uow() as store:
            result = Result(monitor_id=monitor.id, **values)
            store.db.add(result)
            store.db.flush()
            store.db.expunge(result)
        return result

    def get_result(self, result_id) -> Result:
        with self.uow() as store:
            result = store.db.get(Result, result_id)
            store.db.expunge(result)
        return result
