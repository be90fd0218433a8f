from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
from database import Base, build_engine
from models import RefreshToken, User, utcnow
from scheduler import SchedulerManager


def test_scheduler_respects_disabled_flag():
    manager = SchedulerManager()
    assert not manager.settings.scheduler_enabled
    manager.start()
    assert not manager.scheduler.running
    manager.stop()


def test_purge_job_runs_in_its_own_session(monkeypatch):
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    monkeypatch.setattr(database, "SessionLocal", sessionmaker(bind=engine))

    with database.session_scope() as session:
        user = User(email="ana@example.com")
        session.add(user)
        session.flush()
        session.add(
            RefreshToken(
                token="stale", user_id=user.id, expires_at=utcnow() - timedelta(days=1)
            )
        )

    assert SchedulerManager()._run_job("test") == 1
    with database.session_scope() as session:
        assert session.scalars(select(RefreshToken)).all() == []
