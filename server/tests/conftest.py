"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os

# Settings are read when the Celery app module is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Sequence
from unittest.mock import Mock

import openpyxl
import pytest
from redis import Redis
from sqlalchemy import Column, Engine, Integer, MetaData, String, Table, create_engine, event

from excel_importer.core.config import Settings
from excel_importer.core.db import Database
from excel_importer.core.redis_manager import ProgressPublisher
from excel_importer.models.base import Base


def sqlite_engine(path: Path) -> Engine:
    """File-backed SQLite engine with working SAVEPOINT support."""
    engine = create_engine(f"sqlite:///{path}", future=True)

    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; take over
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'jobs.db'}",
        TARGET_DATABASE_URL=f"sqlite:///{tmp_path / 'target.db'}",
        REDIS_URL="redis://localhost:6379/15",
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
    )


@pytest.fixture
def job_store(tmp_path: Path) -> Generator[Database, None, None]:
    """Job store database with the import_jobs table created."""
    database = Database(sqlite_engine(tmp_path / "jobs.db"))
    Base.metadata.create_all(database.engine)
    yield database
    database.dispose()


@pytest.fixture
def target_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    engine = sqlite_engine(tmp_path / "target.db")
    yield engine
    engine.dispose()


@pytest.fixture
def contacts_table(target_engine: Engine) -> Table:
    """Target table with columns [Name, Email]."""
    metadata = MetaData()
    table = Table(
        "contacts",
        metadata,
        Column("Name", String(255)),
        Column("Email", String(255)),
    )
    metadata.create_all(target_engine)
    return table


@pytest.fixture
def measurements_table(target_engine: Engine) -> Table:
    metadata = MetaData()
    table = Table(
        "measurements",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("reading", Integer),
        Column("label", String(255)),
    )
    metadata.create_all(target_engine)
    return table


@pytest.fixture
def make_xlsx(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing rows to a workbook; returns its path."""

    def _make(
        rows: Iterable[Sequence[Any]],
        name: str = "data.xlsx",
        sheet_title: str | None = None,
        extra_sheets: Sequence[str] = (),
    ) -> Path:
        workbook = openpyxl.Workbook()
        worksheet = workbook.active
        if sheet_title:
            worksheet.title = sheet_title
        for row in rows:
            worksheet.append(list(row))
        for title in extra_sheets:
            workbook.create_sheet(title)
        path = tmp_path / name
        workbook.save(path)
        return path

    return _make


@pytest.fixture
def contacts_file(make_xlsx) -> Path:
    return make_xlsx(
        [
            ["Name", "Email"],
            ["Alice", "alice@example.com"],
            ["Bob", "bob@example.com"],
            ["Carol", "carol@example.com"],
        ],
        name="contacts.xlsx",
    )


@pytest.fixture
def redis_mock() -> Mock:
    return Mock(spec=Redis)


@pytest.fixture
def publisher(redis_mock: Mock) -> ProgressPublisher:
    return ProgressPublisher(redis_mock)
