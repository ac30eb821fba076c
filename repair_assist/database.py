from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        sqlite_args = {"check_same_thread": False, "timeout": 30}
    else:
        sqlite_args = {}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, or every session sees an empty database
        return create_engine(url, connect_args=sqlite_args, poolclass=StaticPool)
    return create_engine(url, connect_args=sqlite_args)


Base = declarative_base()


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def init_db(bind: Engine) -> None:
    """Create tables and seed the repair knowledge base if it is empty."""
    from . import db_models  # noqa: F401  registers the tables
    from .repair_knowledge import seed_knowledge

    Base.metadata.create_all(bind=bind)
    seed_knowledge(make_session_factory(bind))
