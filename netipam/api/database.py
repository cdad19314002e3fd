from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from netipam.config import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    kwargs = {}
    if url.startswith("sqlite"):
        # Worker threads and request handlers share the same file.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)
Base = declarative_base()


def init_db(bind=None):
    from netipam.api import models  # noqa: F401 - registers tables on Base

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
