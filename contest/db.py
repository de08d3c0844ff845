from __future__ import annotations

from sqlalchemy.engine import Engine

from billing.db import is_production_env, run_alembic_upgrade

from .models import ContestBase


def init_contest_db(engine: Engine, *, use_migrations: bool | None = None) -> None:
    if use_migrations is None:
        use_migrations = is_production_env()
    if use_migrations:
        # One revision chain covers both stores; upgrading a database already at head is a no-op.
        run_alembic_upgrade(engine.url.render_as_string(hide_password=False), "head")
        return
    ContestBase.metadata.create_all(bind=engine)
