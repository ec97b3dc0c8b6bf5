from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def make_session_factory(engine):
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine) -> None:
    # make sure the tables are registered on Base before creating them
    from fleet_guardian import models  # noqa: F401

    Base.metadata.create_all(engine)
