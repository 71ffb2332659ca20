"""Alembic environment for the SMS bridge schema.

The database URL comes from the application settings (``MYSQL_URL``), so
migrations run against the same database as the API and the dispatcher.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from smsbridge_core.config import get_settings
from smsbridge_core.domain.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit the migration SQL to the script output without a connection."""
    context.configure(
        url=get_settings().mysql_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = get_settings().mysql_url

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        # Status columns are enums; type changes must show up in autogenerate
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
