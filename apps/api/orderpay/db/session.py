from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderpay.config import settings


def build_engine(database_url: str) -> Engine:
    engine_kwargs: dict = {"pool_pre_ping": True}
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        # in-memory SQLite must share one connection across sessions
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool

    built = create_engine(database_url, **engine_kwargs)

    if is_sqlite:
        # order_items rely on ON DELETE CASCADE, which SQLite ignores unless enabled
        @event.listens_for(built, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return built


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
