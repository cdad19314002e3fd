from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from netipam.api.database import Base
from netipam.api import models  # noqa: F401
from netipam.api.schemas import SettingsSnapshot

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_device(session_factory):
    def _make(**kwargs):
        kwargs.setdefault("name", "device")
        with session_factory() as s:
            d = models.Device(**kwargs)
            s.add(d)
            s.commit()
            return d
    return _make


@pytest.fixture
def snapshot():
    def _snap(**overrides):
        values = dict(
            updater_enabled=True,
            controller_base_url="https://controller.local",
            controller_site="default",
            controller_username="admin",
            controller_password="secret",
        )
        values.update(overrides)
        return SettingsSnapshot(**values)
    return _snap
