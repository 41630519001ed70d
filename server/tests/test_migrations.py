"""The Alembic revision must create the schema the ORM model expects."""
from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from excel_importer.models import ImportJob

ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"


def test_upgrade_creates_import_jobs_matching_model(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", url)

    command.upgrade(config, "head")

    engine = create_engine(url)
    try:
        columns = {column["name"] for column in inspect(engine).get_columns("import_jobs")}
    finally:
        engine.dispose()
    assert columns == set(ImportJob.__table__.columns.keys())


def test_downgrade_drops_table(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", url)

    command.upgrade(config, "head")
    command.downgrade(config, "base")

    engine = create_engine(url)
    try:
        assert not inspect(engine).has_table("import_jobs")
    finally:
        engine.dispose()
