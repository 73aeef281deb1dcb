from __future__ import annotations

from logging.config import fileConfig
from sqlalchemy import engine_from_config
from sqlalchemy import pool
from alembic import context

# импортируем базовый класс и модели, чтобы автогенерация видела таблицы
from ga4_relay.core.config import settings
from ga4_relay.db.base_class import Base
from ga4_relay.models.event import GA4Event, JobLease  # noqa: F401 - регистрируем модели

config = context.config


def _alembic_url() -> str:
    # Alembic работает синхронно; asyncpg заменяем на psycopg2, aiosqlite на pysqlite
    url = config.get_main_option("sqlalchemy.url") or settings.database_url
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


config.set_main_option("sqlalchemy.url", _alembic_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
