from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

_engine = None
SessionLocal = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class BaseModel(Base):
    __abstract__ = True

    @classmethod
    def get(cls, session: Session, item_id):
        return session.get(cls, item_id)

    @classmethod
    def list(cls, session: Session, limit: int | None = None, offset: int = 0):
        stmt = select(cls).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return session.execute(stmt).scalars().all()

    @classmethod
    def create(cls, session: Session, **kwargs):
        instance = cls(**kwargs)
        session.add(instance)
        session.flush()
        return instance

    def save(self, session: Session):
        session.add(self)
        session.flush()
        return self

    def delete(self, session: Session) -> None:
        session.delete(self)


def init_engine(database_uri: str):
    global _engine, SessionLocal
    if _engine is None:
        connect_args = {}
        if database_uri.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        _engine = create_engine(
            database_uri,
            connect_args=connect_args,
            future=True,
        )
        SessionLocal = sessionmaker(bind=_engine, expire_on_commit=False, class_=Session)
    return _engine


def init_db() -> None:
    if _engine is None:
        raise RuntimeError("Database engine is not initialized")
    # Registers the mapped tables on Base.metadata.
    import core.models  # noqa: F401

    Base.metadata.create_all(bind=_engine)


def create_session() -> Session:
    if SessionLocal is None:
        raise RuntimeError("Database session is not initialized")
    return SessionLocal()


@contextmanager
def session_scope():
    if SessionLocal is None:
        raise RuntimeError("Database session is not initialized")
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
