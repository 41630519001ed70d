"""Set-based batch writer for target tables."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
from typing import Any, Iterator, Literal, Mapping, Sequence

from sqlalchemy import Connection, Engine, column, insert, inspect, table
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, InterfaceError, NoSuchTableError
from sqlalchemy.types import TypeEngine

from excel_importer.core.errors import ImportIOError, RowError, SchemaError
from excel_importer.services.type_inference import coerce_value, infer_sql_type

logger = logging.getLogger(__name__)

InsertStrategy = Literal["bulk", "per_row"]
INSERT_STRATEGIES: tuple[str, ...] = ("bulk", "per_row")


@dataclass
class RowFailure:
    """A row that was rejected; ``row`` is 1-based within the batch."""

    row: int
    error: str


@dataclass
class BatchInsertResult:
    inserted: int
    failed: int
    errors: list[RowFailure] = field(default_factory=list)

    @classmethod
    def whole_batch_failed(cls, size: int, message: str) -> "BatchInsertResult":
        return cls(
            inserted=0,
            failed=size,
            errors=[RowFailure(row=index, error=message) for index in range(1, size + 1)],
        )


def split_table_name(table_name: str) -> tuple[str | None, str]:
    """Split ``schema.table`` into its parts; the schema is None when absent."""

    schema, _, name = table_name.rpartition(".")
    return schema or None, name


def _engine_message(exc: DBAPIError) -> str:
    return str(exc.orig) if exc.orig is not None else str(exc)


def _translate_db_error(exc: DBAPIError) -> Exception:
    if exc.connection_invalidated or isinstance(exc, InterfaceError):
        return ImportIOError(_engine_message(exc))
    return SchemaError(_engine_message(exc))


class BulkLoader:
    """Writes batches of records into an existing table.

    ``bulk`` sends the whole batch as one typed executemany inside a single
    transaction and fails the batch atomically. ``per_row`` inserts each row
    under its own SAVEPOINT within one transaction, records row errors and
    commits the rows that succeeded.
    """

    def __init__(self, engine: Engine, *, strategy: InsertStrategy = "bulk") -> None:
        if strategy not in INSERT_STRATEGIES:
            msg = f"Unknown insert strategy: {strategy}"
            raise ValueError(msg)
        self._engine = engine
        self.strategy = strategy

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            connection = self._engine.connect()
        except DBAPIError as exc:
            raise ImportIOError(f"Database unreachable: {_engine_message(exc)}") from exc
        with connection:
            yield connection

    def table_exists(self, table_name: str) -> bool:
        schema, name = split_table_name(table_name)
        with self._connect() as connection:
            try:
                return inspect(connection).has_table(name, schema=schema)
            except DBAPIError as exc:
                raise ImportIOError(_engine_message(exc)) from exc

    def get_table_columns(self, table_name: str) -> list[str]:
        """Return the table's column names in ordinal order."""

        schema, name = split_table_name(table_name)
        with self._connect() as connection:
            try:
                columns = inspect(connection).get_columns(name, schema=schema)
            except NoSuchTableError as exc:
                raise SchemaError(f"Table {table_name} does not exist") from exc
            except DBAPIError as exc:
                raise _translate_db_error(exc) from exc
        return [info["name"] for info in columns]

    def insert_batch(
        self,
        table_name: str,
        records: Sequence[Mapping[str, Any]],
        column_mapping: Mapping[str, str] | None = None,
    ) -> BatchInsertResult:
        """Insert ``records`` into ``table_name`` and report the per-batch outcome.

        Columns come from the keys of the first record and their types from its
        values; every record is assumed to share that key set.
        """

        if not records:
            return BatchInsertResult(inserted=0, failed=0)

        sample = records[0]
        source_columns = list(sample.keys())
        mapping = column_mapping or {}
        target_columns = [mapping.get(name, name) for name in source_columns]
        column_types = [infer_sql_type(sample[name]) for name in source_columns]

        schema, name = split_table_name(table_name)
        target = table(
            name,
            *(column(target_name, sql_type) for target_name, sql_type in zip(target_columns, column_types)),
            schema=schema,
        )
        statement = insert(target)
        layout = list(zip(source_columns, target_columns, column_types))

        if self.strategy == "bulk":
            result = self._insert_bulk(statement, records, layout)
        else:
            result = self._insert_per_row(statement, records, layout)

        logger.info(
            f"Batch insert into {table_name} completed: {result.inserted} inserted, {result.failed} failed"
        )
        return result

    @staticmethod
    def _prepare_row(
        record: Mapping[str, Any],
        layout: list[tuple[str, str, TypeEngine]],
    ) -> dict[str, Any]:
        return {
            target_name: coerce_value(record.get(source_name), sql_type)
            for source_name, target_name, sql_type in layout
        }

    def _insert_bulk(self, statement, records, layout) -> BatchInsertResult:
        rows = []
        for index, record in enumerate(records, start=1):
            try:
                rows.append(self._prepare_row(record, layout))
            except ValueError as exc:
                raise RowError(index, str(exc)) from exc

        with self._connect() as connection:
            try:
                with connection.begin():
                    connection.execute(statement, rows)
            except (IntegrityError, DataError):
                raise
            except DBAPIError as exc:
                raise _translate_db_error(exc) from exc

        return BatchInsertResult(inserted=len(rows), failed=0)

    def _insert_per_row(self, statement, records, layout) -> BatchInsertResult:
        inserted = 0
        errors: list[RowFailure] = []

        with self._connect() as connection:
            try:
                with connection.begin():
                    for index, record in enumerate(records, start=1):
                        try:
                            row = self._prepare_row(record, layout)
                            with connection.begin_nested():
                                connection.execute(statement, row)
                        except (IntegrityError, DataError) as exc:
                            message = _engine_message(exc)
                        except ValueError as exc:
                            message = str(exc)
                        else:
                            inserted += 1
                            continue
                        errors.append(RowFailure(row=index, error=message))
                        logger.warning(f"Failed to insert row {index}: {message}")
            except (IntegrityError, DataError):
                raise
            except DBAPIError as exc:
                raise _translate_db_error(exc) from exc

        return BatchInsertResult(inserted=inserted, failed=len(errors), errors=errors)
