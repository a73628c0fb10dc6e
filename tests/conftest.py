import os

# settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TIMEZONE"] = "UTC"
os.environ["TAT_DEFAULT_SECONDS"] = "1800"

from datetime import datetime, timedelta

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from app.api.deps import get_bed_service, get_db, get_notifier
from app.crud.crud_ipd_beds import list_beds
from app.db.base import Base
from app.db.init_db import seed_beds
from app.db.session import make_engine
from app.main import create_app
from app.services.bed_events import BedChangeNotifier
from app.services.ipd_bed_service import BedAdmissionService


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'ipd.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def beds(db):
    """bed_number -> id for B1..B5."""
    seed_beds(db, 5)
    return {b.bed_number: b.id for b in list_beds(db)}


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def notifier():
    return BedChangeNotifier(retry_attempts=3)


@pytest.fixture
def service(db, notifier, clock):
    return BedAdmissionService(db, notifier, clock=clock)


@pytest.fixture
def client(session_factory, notifier, clock, beds):
    app = create_app()

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def _get_service(db: Session = Depends(get_db),
                     notifier: BedChangeNotifier = Depends(get_notifier)):
        return BedAdmissionService(db, notifier, clock=clock)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_bed_service] = _get_service

    with TestClient(app) as c:
        yield c
