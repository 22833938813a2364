from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from axmon_core.database.base import Base
from axmon_core.models import alert, escalation, incident, remediation  # noqa: F401

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def alembic_config(db_path: Path) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")
    return config


def reflect(db_path: Path):
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        inspector = inspect(engine)
        return {
            table: {column["name"] for column in inspector.get_columns(table)}
            for table in inspector.get_table_names()
        }
    finally:
        engine.dispose()


def test_upgrade_head_matches_models(tmp_path):
    db_path = tmp_path / "schema.db"

    command.upgrade(alembic_config(db_path), "head")

    tables = reflect(db_path)
    expected = {
        name: {column.name for column in table.columns}
        for name, table in Base.metadata.tables.items()
    }
    assert set(tables) - {"alembic_version"} == set(expected)
    for name, columns in expected.items():
        assert tables[name] == columns, name


def test_downgrade_base_drops_everything(tmp_path):
    db_path = tmp_path / "schema.db"
    config = alembic_config(db_path)

    command.upgrade(config, "head")
    command.downgrade(config, "base")

    assert set(reflect(db_path)) == {"alembic_version"}
