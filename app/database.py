from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session
from app.config import settings


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,      # checks dead connections
        pool_recycle=1800        # refresh every 30 min
    )


engine = build_engine(settings.database_url)


def create_db_and_tables(bind: Engine = engine):
    from app.models import order, order_item, order_tracking, payment, notifications  # noqa: F401
    SQLModel.metadata.create_all(bind)


def get_engine() -> Engine:
    return engine


@contextmanager
def transaction_scope(bind: Engine) -> Iterator[Session]:
    """Unit of work: commit on normal exit, rollback on any exception.

    The connection goes back to the pool on every path.
    """
    session = Session(bind, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def use_session(bind: Engine, session: Optional[Session] = None, write: bool = False) -> Iterator[Session]:
    """Join the caller's scope when given one, else open our own."""
    if session is not None:
        yield session
    elif write:
        with transaction_scope(bind) as own:
            yield own
    else:
        with Session(bind) as own:
            yield own
