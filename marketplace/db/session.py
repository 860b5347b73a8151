from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from marketplace.core.config import settings
from marketplace.core.errors import UpstreamFailure

engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def commit(db: Session) -> None:
    """Commit now; a lost connection rolls back and becomes ``UpstreamFailure``."""

    try:
        db.commit()
    except OperationalError as exc:
        db.rollback()
        raise UpstreamFailure("database", str(exc.orig or exc)) from exc


def _run_in_transaction(db: Session) -> Iterator[Session]:
    try:
        yield db
        commit(db)
    except OperationalError as exc:
        db.rollback()
        raise UpstreamFailure("database", str(exc.orig or exc)) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Generator[Session, None, None]:
    """Provide one transaction per request; connection errors become retryable."""

    yield from _run_in_transaction(SessionLocal())


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Transactional scope for scripts running outside a request."""

    yield from _run_in_transaction(factory())
