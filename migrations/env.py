"""Alembic environment for the ``scans`` / ``scan_results`` schema."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine.url import make_url
from sqlmodel import SQLModel

from app.config import settings
from app.models import scan_record  # noqa: F401 - registers tables on SQLModel.metadata
from app.services.scan.repositories import coerce_sync_database_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("idea_scan.alembic")
target_metadata = SQLModel.metadata


def _database_url() -> tuple[str, dict]:
    """DATABASE_URL from the environment, then alembic.ini, then app settings."""
    for origin, value in (
        ("environment", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("settings", settings.database_url),
    ):
        if value:
            url, connect_args, _ = coerce_sync_database_url(make_url(value))
            logger.info(
                "scan.migration.database_url",
                extra={"origin": origin, "url": make_url(url).render_as_string(hide_password=True)},
            )
            return url, connect_args
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def run_migrations_offline() -> None:
    url, _ = _database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url, connect_args = _database_url()
    engine = create_engine(url, poolclass=pool.NullPool, connect_args=connect_args)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
