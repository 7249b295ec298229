""" SQLAlchemy SessionMaker """
from functools import lru_cache

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import sessionmaker


@lru_cache(maxsize=None)
def get_engine(connection_string: str, echo: bool = False) -> Engine:
    """Returns the engine for a connection string, creating it on first use."""
    return create_engine(connection_string, echo=echo, pool_pre_ping=True)


@lru_cache(maxsize=None)
def get_session_maker(connection_string: str, echo: bool = False) -> sessionmaker:
    """Returns the session factory bound to the engine for a connection string."""
    return sessionmaker(bind=get_engine(connection_string, echo), expire_on_commit=False)
