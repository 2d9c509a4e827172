"""Database engine and session helpers."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine with settings suited to the URL."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args=connect_args or {}, pool_pre_ping=True)

    # One shared connection, so in-memory databases survive across sessions and threads
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if connect_args is None else connect_args,
        poolclass=StaticPool,
        echo=echo
    )


def get_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the models on Base

    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine):
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
