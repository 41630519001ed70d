"""Streaming spreadsheet reader producing bounded row batches.

Workbooks are opened with openpyxl in read-only mode so rows are parsed from
the XML stream on demand; only the batch under construction is held in memory.
"""
from __future__ import annotations

import csv
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
import logging
from pathlib import Path
from typing import Any, Iterator
import zipfile

import openpyxl
from openpyxl.cell.rich_text import CellRichText
from openpyxl.utils.exceptions import InvalidFileException

from excel_importer.core.errors import ImportIOError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
CSV_EXTENSIONS = frozenset({".csv"})

ImportRecord = dict[str, Any]


@dataclass
class Batch:
    """Ordered records plus the sheet row each record was read from."""

    records: list[ImportRecord] = field(default_factory=list)
    row_numbers: list[int] = field(default_factory=list)

    def append(self, record: ImportRecord, row_number: int) -> None:
        self.records.append(record)
        self.row_numbers.append(row_number)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ImportRecord]:
        return iter(self.records)


def coerce_cell(value: Any) -> Any:
    """Map a raw cell value to the scalar stored in an ImportRecord."""

    if value is None:
        return None
    if isinstance(value, (datetime, date, time)):
        return value
    if isinstance(value, CellRichText):
        return str(value)
    if isinstance(value, (str, bool, int, float, Decimal)):
        return value
    return str(value)


def _header_name(value: Any) -> str | None:
    if value is None:
        return None
    name = str(value).strip()
    return name or None


class SpreadsheetReader:
    """Reads a sheet as a lazy, single-pass sequence of batches."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size <= 0:
            msg = "batch_size must be positive"
            raise ValueError(msg)
        self.batch_size = batch_size

    def iter_batches(
        self,
        file_path: str | Path,
        *,
        sheet_name: str | None = None,
        skip_rows: int = 0,
    ) -> Iterator[Batch]:
        """Yield batches of non-blank data rows in file order."""

        with self._open_rows(file_path, sheet_name, skip_rows) as (headers, rows):
            logger.info(f"Spreadsheet headers detected: {', '.join(h for h in headers if h)}")
            batch = Batch()
            for row_number, values in rows:
                record = self._build_record(headers, values)
                if record is None:
                    continue
                batch.append(record, row_number)
                if len(batch) >= self.batch_size:
                    yield batch
                    batch = Batch()
            if batch:
                yield batch

    def read_headers(
        self,
        file_path: str | Path,
        *,
        sheet_name: str | None = None,
        skip_rows: int = 0,
    ) -> list[str]:
        """Return the non-blank header names in column order."""

        with self._open_rows(file_path, sheet_name, skip_rows) as (headers, _rows):
            return [name for name in headers if name]

    def count_rows(
        self,
        file_path: str | Path,
        *,
        sheet_name: str | None = None,
        skip_rows: int = 0,
    ) -> int:
        """Count the data rows ``iter_batches`` would emit, without building batches."""

        count = 0
        with self._open_rows(file_path, sheet_name, skip_rows) as (headers, rows):
            for _row_number, values in rows:
                if self._has_data(headers, values):
                    count += 1
        return count

    @staticmethod
    def _has_data(headers: list[str | None], values: tuple[Any, ...]) -> bool:
        for name, value in zip(headers, values):
            if name is None:
                continue
            value = coerce_cell(value)
            if value is not None and value != "":
                return True
        return False

    @staticmethod
    def _build_record(headers: list[str | None], values: tuple[Any, ...]) -> ImportRecord | None:
        record: ImportRecord = {}
        has_data = False
        for index, name in enumerate(headers):
            if name is None:
                continue
            value = coerce_cell(values[index]) if index < len(values) else None
            record[name] = value
            if value is not None and value != "":
                has_data = True
        return record if has_data else None

    @contextmanager
    def _open_rows(self, file_path: str | Path, sheet_name: str | None, skip_rows: int):
        path = Path(file_path)
        if path.suffix.lower() in CSV_EXTENSIONS:
            with self._open_csv_rows(path, skip_rows) as opened:
                yield opened
        else:
            with self._open_workbook_rows(path, sheet_name, skip_rows) as opened:
                yield opened

    @contextmanager
    def _open_workbook_rows(self, path: Path, sheet_name: str | None, skip_rows: int):
        try:
            workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError) as exc:
            raise ImportIOError(f"Failed to read spreadsheet file {path.name}: {exc}") from exc

        try:
            if sheet_name:
                if sheet_name not in workbook.sheetnames:
                    raise NotFoundError(f"Worksheet {sheet_name} not found")
                worksheet = workbook[sheet_name]
            else:
                if not workbook.worksheets:
                    raise NotFoundError("Worksheet default not found")
                worksheet = workbook.worksheets[0]

            first_row = skip_rows + 1
            raw_rows = worksheet.iter_rows(min_row=first_row, values_only=True)
            try:
                header_values = next(raw_rows, ())
                headers = [_header_name(value) for value in header_values]
                yield headers, enumerate(raw_rows, start=first_row + 1)
            except (zipfile.BadZipFile, KeyError, SyntaxError) as exc:
                # SyntaxError covers xml ParseError from a damaged sheet part
                raise ImportIOError(f"Failed to parse spreadsheet file {path.name}: {exc}") from exc
        finally:
            workbook.close()

    @contextmanager
    def _open_csv_rows(self, path: Path, skip_rows: int):
        try:
            handle = open(path, "r", encoding="utf-8-sig", newline="")
        except OSError as exc:
            raise ImportIOError(f"Failed to read spreadsheet file {path.name}: {exc}") from exc

        with handle:
            reader = csv.reader(handle)

            header_line = skip_rows + 1

            def rows() -> Iterator[tuple[int, tuple[Any, ...]]]:
                try:
                    for line_number, values in enumerate(reader, start=header_line + 1):
                        yield line_number, tuple(value if value != "" else None for value in values)
                except (csv.Error, UnicodeDecodeError) as exc:
                    raise ImportIOError(f"Failed to parse CSV file {path.name}: {exc}") from exc

            header_values: list[str] = []
            try:
                for line_number, values in enumerate(reader, start=1):
                    if line_number == header_line:
                        header_values = values
                        break
            except (csv.Error, UnicodeDecodeError) as exc:
                raise ImportIOError(f"Failed to parse CSV file {path.name}: {exc}") from exc

            headers = [_header_name(value) for value in header_values]
            yield headers, rows()
