"""Database engine and session helpers built on SQLModel."""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ragbot.core.config import AppSettings

EngineCacheKey = tuple[str, bool]
_ENGINE_CACHE: dict[EngineCacheKey, Engine] = {}


def create_engine_from_settings(settings: AppSettings, *, echo: bool = False) -> Engine:
    """Create (or reuse) a SQLModel engine based on ``AppSettings``."""

    dsn = settings.postgres.dsn
    cache_key: EngineCacheKey = (dsn, echo)
    if cache_key not in _ENGINE_CACHE:
        _ENGINE_CACHE[cache_key] = create_engine(dsn, echo=echo, pool_pre_ping=True)
    return _ENGINE_CACHE[cache_key]


def init_db(engine: Engine) -> None:
    """Create all tables for the metadata on the provided engine."""

    from . import models  # noqa: F401  Ensures models are imported before metadata usage.

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Run the block in one transaction: commit on success, roll back on error."""

    with Session(engine) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def insert_ignore(
    session: Session,
    model: type[SQLModel],
    rows: Sequence[Mapping[str, Any]],
) -> int:
    """Bulk insert ``rows`` skipping any that hit a unique constraint.

    Returns the number of rows actually inserted.
    """

    if not rows:
        return 0
    table = model.__table__  # type: ignore[attr-defined]
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        statement = postgresql.insert(table).on_conflict_do_nothing()
    elif dialect == "sqlite":
        statement = sqlite.insert(table).on_conflict_do_nothing()
    else:  # pragma: no cover - only postgres and sqlite are deployed
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    result = session.execute(statement, [dict(row) for row in rows])
    return max(result.rowcount or 0, 0)
