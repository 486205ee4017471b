from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .config import DATABASE_URL, STORE_TIMEOUT_SECONDS


def build_engine(url: str = DATABASE_URL):
    if url.startswith("sqlite"):
        # timeout bounds how long a writer waits on a locked database
        connect_args = {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}
        return create_engine(url, connect_args=connect_args)
    return create_engine(url, pool_pre_ping=True, pool_timeout=STORE_TIMEOUT_SECONDS)


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def init_db(bind=None):
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# Dependency for FastAPI routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
