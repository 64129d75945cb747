from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from syncbridge.core.config import settings
from syncbridge.schemas.sync_event import Provenance


def _build_engine(raw_url: str) -> AsyncEngine:
    database_url = make_url(raw_url)
    query = dict(database_url.query)
    if (database_url.host or "").endswith("supabase.co") and "sslmode" not in query:
        query["sslmode"] = "require"
        database_url = database_url.set(query=query)

    async_engine = create_async_engine(
        database_url.render_as_string(hide_password=False),
        echo=False,
        pool_pre_ping=settings.database_pool_pre_ping,
        poolclass=NullPool,
    )

    if async_engine.dialect.name == "sqlite":
        # pysqlite defers BEGIN, which breaks SAVEPOINT handling; emit it ourselves.
        @event.listens_for(async_engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(async_engine.sync_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return async_engine


system_a_engine = _build_engine(settings.system_a_database_url)
system_b_engine = _build_engine(settings.system_b_database_url)

SystemASessionFactory = async_sessionmaker(system_a_engine, expire_on_commit=False, class_=AsyncSession)
SystemBSessionFactory = async_sessionmaker(system_b_engine, expire_on_commit=False, class_=AsyncSession)

ENGINES: dict[Provenance, AsyncEngine] = {
    Provenance.A: system_a_engine,
    Provenance.B: system_b_engine,
}

SESSION_FACTORIES: dict[Provenance, async_sessionmaker[AsyncSession]] = {
    Provenance.A: SystemASessionFactory,
    Provenance.B: SystemBSessionFactory,
}


async def verify_connectivity(system: Provenance) -> None:
    """Run a trivial statement against a store; raises if it is unreachable."""
    async with ENGINES[system].connect() as conn:
        await conn.execute(text("SELECT 1"))

