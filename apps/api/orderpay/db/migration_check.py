from __future__ import annotations

from pathlib import Path
from typing import Optional

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from orderpay.config import settings
from orderpay.db.base import Base

_ALEMBIC_VERSION_TABLE = "alembic_version"


def _alembic_ini_path() -> Path:
    return Path(__file__).resolve().parents[2] / "alembic.ini"


def _alembic_config() -> Config:
    config = Config(str(_alembic_ini_path()))
    config.set_main_option("script_location", str(Path(__file__).resolve().parent / "migrations"))
    return config


def get_alembic_head_revision() -> str:
    script = ScriptDirectory.from_config(_alembic_config())
    return script.get_current_head()


def get_current_db_revision(engine: Engine) -> Optional[str]:
    inspector = inspect(engine)
    if not inspector.has_table(_ALEMBIC_VERSION_TABLE):
        return None

    with engine.connect() as connection:
        result = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        return result.scalar_one_or_none()


def is_db_up_to_date(engine: Engine) -> bool:
    return get_current_db_revision(engine) == get_alembic_head_revision()


def assert_db_is_up_to_date(engine: Engine) -> None:
    if not is_db_up_to_date(engine):
        raise RuntimeError("Database schema not up to date. Run: alembic upgrade head")


def prepare_schema(engine: Engine) -> None:
    """Create tables directly under test, otherwise require migrations at head."""
    if settings.testing:
        Base.metadata.create_all(bind=engine)
        return
    assert_db_is_up_to_date(engine)
