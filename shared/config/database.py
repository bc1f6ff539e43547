import os

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy import text

from shared.config import settings  # noqa: F401  loads .env before the reads below

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost") # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "cutter_orders")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

ORDER_SCHEMA = "order_schema"

IS_SQLITE = DATABASE_URL.startswith("sqlite")

_engine_options = {"echo": os.getenv("DB_ECHO", "false").lower() == "true"}
if IS_SQLITE:
    # SQLite has no schemas; connections are opened per session so they never
    # outlive the event loop that created them.
    _engine_options["poolclass"] = NullPool
    _engine_options["execution_options"] = {"schema_translate_map": {ORDER_SCHEMA: None}}

engine = create_async_engine(DATABASE_URL, **_engine_options)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

Base = declarative_base()


async def ensure_schema(conn, schema: str = ORDER_SCHEMA):
    if not IS_SQLITE:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
