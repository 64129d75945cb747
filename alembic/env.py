from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from syncbridge.core.config import settings
from syncbridge.models.base import Base

# Import models so Alembic is aware of them
from syncbridge.models import entity_mapping, processed_event  # noqa: F401

# The ledger tables live in both stores: `alembic -x store=a upgrade head`, then store=b.
STORE_URLS = {
    "a": settings.system_a_database_url,
    "b": settings.system_b_database_url,
}

config = context.config
store = context.get_x_argument(as_dictionary=True).get("store", "a").lower()
if store not in STORE_URLS:
    raise SystemExit(f"Unknown store {store!r}; pass -x store=a or -x store=b")
config.set_main_option("sqlalchemy.url", STORE_URLS[store])

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async def async_run_migrations() -> None:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
        await connectable.dispose()

    asyncio.run(async_run_migrations())


def main() -> None:
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        run_migrations_online()


main()
