from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from pos_ledger.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True, echo=settings.database_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing.

    Any exception raised inside rolls the session back before it propagates,
    so a failed ledger operation never leaves a partial write behind.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db(bind: Engine, reserve_account_name: str | None = None) -> None:
    """Create missing tables and seed the reserve account. Safe to run repeatedly."""
    from pos_ledger.models import Account

    Base.metadata.create_all(bind=bind)
    name = reserve_account_name or settings.reserve_account_name
    with Session(bind) as session, transaction(session):
        exists = session.scalar(select(Account.id).where(Account.name == name))
        if exists is None:
            session.add(Account(name=name, balance=0))
