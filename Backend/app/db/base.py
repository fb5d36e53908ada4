from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings

# Base class for models
Base = declarative_base()


def make_engine(database_url: str = settings.DATABASE_URL) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # check_same_thread=False is needed for SQLite + FastAPI/Async
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create tables on startup."""
    from app.db import models  # noqa: F401  (registers the tables on Base)
    Base.metadata.create_all(bind=engine)
