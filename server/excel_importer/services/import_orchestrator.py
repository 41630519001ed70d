"""Sequences reader -> loader for one import and reports progress per batch."""
from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass, field
import logging
import math
from pathlib import Path
import time
from typing import Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError

from excel_importer.core.errors import ImportPipelineError
from excel_importer.schemas.import_job import FailedRecord, JobProgress
from excel_importer.services.bulk_loader import BatchInsertResult, BulkLoader
from excel_importer.services.import_validator import ImportValidator
from excel_importer.services.spreadsheet_reader import Batch, SpreadsheetReader

logger = logging.getLogger(__name__)

DEFAULT_FAILED_RECORDS_LIMIT = 100

ProgressSink = Callable[[JobProgress], None]
CancelCheck = Callable[[], bool]

# Errors a single batch insert may raise; any of them fails that batch only
BATCH_ERRORS = (ImportPipelineError, SQLAlchemyError, ValueError)


@dataclass
class ImportOutcome:
    success_count: int = 0
    failed_count: int = 0
    processed_count: int = 0
    total_rows: int = 0
    duration_ms: int = 0
    batches: int = 0
    failed_records: list[FailedRecord] = field(default_factory=list)
    dropped_failed_records: int = 0
    cancelled: bool = False

    @property
    def records_per_second(self) -> float | None:
        if self.duration_ms <= 0:
            return None
        return round(self.processed_count / (self.duration_ms / 1000), 2)


class ImportOrchestrator:
    """Drives the full import of one file into one table.

    Batches are processed strictly in file order. An error raised by one batch
    insert is recorded as the whole batch failing and the loop moves on; only
    the table check and the row count, both before the first batch, escape.
    """

    def __init__(
        self,
        reader: SpreadsheetReader,
        loader: BulkLoader,
        validator: ImportValidator,
        *,
        failed_records_limit: int = DEFAULT_FAILED_RECORDS_LIMIT,
    ) -> None:
        self._reader = reader
        self._loader = loader
        self._validator = validator
        self._failed_records_limit = failed_records_limit

    def run(
        self,
        file_path: str | Path,
        table_name: str,
        *,
        sheet_name: str | None = None,
        column_mapping: Mapping[str, str] | None = None,
        skip_rows: int = 0,
        on_progress: ProgressSink | None = None,
        should_cancel: CancelCheck | None = None,
        total_rows: int | None = None,
    ) -> ImportOutcome:
        """Import every batch of ``file_path`` into ``table_name``.

        Args:
            file_path: Readable spreadsheet path
            table_name: Existing target table, optionally schema-qualified
            sheet_name: Worksheet to read; the first sheet when omitted
            column_mapping: Header -> destination column renames
            skip_rows: Leading rows to skip before the header row
            on_progress: Receives a fresh JobProgress after every batch
            should_cancel: Checked before each batch; True stops the loop
            total_rows: Data row count already established by validation;
                counted here when omitted

        Returns:
            ImportOutcome with cumulative counts and failed-row descriptors

        Raises:
            SchemaError: Target table does not exist
            ImportIOError: File unreadable or database unreachable
            NotFoundError: Requested worksheet does not exist
        """
        self._validator.ensure_table_exists(table_name)
        if total_rows is None:
            total = self._reader.count_rows(file_path, sheet_name=sheet_name, skip_rows=skip_rows)
        else:
            total = total_rows
        total_batches = math.ceil(total / self._reader.batch_size) if total else 0

        logger.info(f"Importing {total} rows from {Path(file_path).name} into {table_name} in {total_batches} batches")

        outcome = ImportOutcome(total_rows=total)
        started = time.monotonic()

        batches = self._reader.iter_batches(file_path, sheet_name=sheet_name, skip_rows=skip_rows)
        # closing the generator releases the workbook on every exit path
        with closing(batches):
            for batch_number, batch in enumerate(batches, start=1):
                if should_cancel is not None and should_cancel():
                    logger.info(f"Import into {table_name} cancelled before batch {batch_number}")
                    outcome.cancelled = True
                    break

                result = self._insert(table_name, batch, column_mapping, batch_number)

                outcome.success_count += result.inserted
                outcome.failed_count += result.failed
                outcome.processed_count += len(batch)
                outcome.batches = batch_number
                self._collect_failures(outcome, batch, result)

                if on_progress is not None:
                    on_progress(
                        JobProgress.compute(
                            total=total,
                            processed=outcome.processed_count,
                            failed=outcome.failed_count,
                            current_batch=batch_number,
                            total_batches=max(total_batches, batch_number),
                            elapsed_seconds=time.monotonic() - started,
                        )
                    )

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Import into {table_name} finished: {outcome.success_count} inserted, "
            f"{outcome.failed_count} failed in {outcome.duration_ms}ms"
        )
        return outcome

    def _insert(
        self,
        table_name: str,
        batch: Batch,
        column_mapping: Mapping[str, str] | None,
        batch_number: int,
    ) -> BatchInsertResult:
        try:
            return self._loader.insert_batch(table_name, batch.records, column_mapping)
        except BATCH_ERRORS as exc:
            logger.error(f"Batch {batch_number} ({len(batch)} rows) failed: {exc}", exc_info=True)
            return BatchInsertResult.whole_batch_failed(len(batch), str(exc))

    def _collect_failures(self, outcome: ImportOutcome, batch: Batch, result: BatchInsertResult) -> None:
        for failure in result.errors:
            if len(outcome.failed_records) >= self._failed_records_limit:
                outcome.dropped_failed_records += 1
                continue
            index = failure.row - 1
            outcome.failed_records.append(
                FailedRecord(
                    row_number=batch.row_numbers[index],
                    error=failure.error,
                    data=batch.records[index],
                )
            )
