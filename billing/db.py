from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from alembic import command
from config import APP_ENV, DATABASE_ECHO, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]


def as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite returns offset-naive datetimes even when the models declare
    DateTime(timezone=True). Naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clean_text(value: Optional[str]) -> str:
    return str(value or "").strip()


def _ensure_sqlite_parent(url: str) -> None:
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return
    db_path = url[len(prefix):].split("?", 1)[0]
    if not db_path or db_path == ":memory:":
        return
    path = Path(db_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _build_engine(url: str) -> Engine:
    kwargs: dict[str, Any] = {
        "future": True,
        "echo": DATABASE_ECHO,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # One shared connection, otherwise every session sees an empty database.
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    _ensure_sqlite_parent(database_url)
    engine = _build_engine(database_url)
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, session_factory


def is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


def _is_postgres_url(database_url: str) -> bool:
    normalized = str(database_url or "").strip().lower()
    return normalized.startswith("postgresql://") or normalized.startswith("postgresql+")


def run_alembic_upgrade(database_url: str, revision: str = "head") -> None:
    config_path = Path(ROOT_DIR).resolve() / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"missing alembic.ini: {config_path}")
    alembic_cfg = AlembicConfig(str(config_path))
    alembic_cfg.set_main_option("script_location", str(Path(ROOT_DIR).resolve() / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, revision)


def init_billing_db(engine: Engine, *, use_migrations: bool | None = None) -> None:
    """Create the billing schema, through alembic in production and `create_all` elsewhere."""

    if use_migrations is None:
        use_migrations = is_production_env()
    database_url = engine.url.render_as_string(hide_password=False)
    if not use_migrations:
        Base.metadata.create_all(bind=engine)
        return
    if is_production_env() and not _is_postgres_url(database_url):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")
    run_alembic_upgrade(database_url, "head")


@contextmanager
def session_scope(session_factory: SessionFactory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
