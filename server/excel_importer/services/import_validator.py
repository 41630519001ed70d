"""Pre-flight validation of a spreadsheet against its target table."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from excel_importer.core.errors import ImportIOError, NotFoundError, SchemaError
from excel_importer.services.bulk_loader import BulkLoader
from excel_importer.services.spreadsheet_reader import SpreadsheetReader

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_EXTENSIONS = (".xlsx", ".xlsm", ".csv")
DEFAULT_MAX_FILE_SIZE_MB = 50


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


@dataclass
class ValidationResult:
    """Result of spreadsheet validation with error details."""

    is_valid: bool
    errors: list[FieldError] = field(default_factory=list)
    row_count: int = 0
    columns: list[str] = field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [error.message for error in self.errors]


class ImportValidator:
    """Determines whether a file can be imported into a table without writing."""

    def __init__(
        self,
        reader: SpreadsheetReader,
        loader: BulkLoader,
        *,
        allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
        max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB,
    ) -> None:
        self._reader = reader
        self._loader = loader
        self._allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)
        self._max_file_size_mb = max_file_size_mb

    def ensure_table_exists(self, table_name: str) -> None:
        """Raise SchemaError when the target table is missing."""

        if not self._loader.table_exists(table_name):
            raise SchemaError(f"Table {table_name} does not exist")

    def validate(
        self,
        file_path: str | Path,
        table_name: str,
        *,
        sheet_name: str | None = None,
        skip_rows: int = 0,
        column_mapping: Mapping[str, str] | None = None,
        required_columns: Sequence[str] | None = None,
    ) -> ValidationResult:
        """
        Validate a spreadsheet before enqueueing or running an import.

        Performs the following checks:
        1. File extension, existence and size
        2. Target table exists (a missing table is reported but the row count is still computed)
        3. Headers, after column mapping, cover the required columns
           (every table column when ``required_columns`` is None)
        4. At least one data row after the header/skip offset

        Args:
            file_path: Path to the spreadsheet file
            table_name: Target table, optionally schema-qualified
            sheet_name: Worksheet to read; the first sheet when omitted
            skip_rows: Leading rows to skip before the header row
            column_mapping: Header -> destination column renames
            required_columns: Destination columns the headers must provide

        Returns:
            ValidationResult with validation status and error details
        """
        path = Path(file_path)

        file_errors = self._check_file(path)
        if file_errors:
            return ValidationResult(is_valid=False, errors=file_errors)

        errors: list[FieldError] = []
        table_columns: list[str] = []
        try:
            if self._loader.table_exists(table_name):
                table_columns = self._loader.get_table_columns(table_name)
            else:
                errors.append(FieldError("table", f"Table {table_name} does not exist"))
        except (SchemaError, ImportIOError) as exc:
            errors.append(FieldError("table", str(exc)))

        try:
            headers = self._reader.read_headers(path, sheet_name=sheet_name, skip_rows=skip_rows)
            row_count = self._reader.count_rows(path, sheet_name=sheet_name, skip_rows=skip_rows)
        except NotFoundError as exc:
            errors.append(FieldError("worksheet", str(exc)))
            return ValidationResult(is_valid=False, errors=errors)
        except ImportIOError as exc:
            errors.append(FieldError("file", str(exc)))
            return ValidationResult(is_valid=False, errors=errors)

        if table_columns:
            required = list(required_columns) if required_columns is not None else table_columns
            mapping = column_mapping or {}
            provided = {mapping.get(header, header) for header in headers}
            missing = [name for name in required if name not in provided]
            if missing:
                errors.append(FieldError("columns", f"Missing required columns: {', '.join(missing)}"))

        if row_count == 0:
            errors.append(FieldError("rows", "Spreadsheet contains no data rows"))

        if errors:
            logger.info(f"Validation of {path.name} against {table_name} failed: {len(errors)} error(s)")

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            row_count=row_count,
            columns=headers,
        )

    def _check_file(self, path: Path) -> list[FieldError]:
        if path.suffix.lower() not in self._allowed_extensions:
            return [
                FieldError(
                    "file",
                    f"Invalid file extension: {path.suffix}. Expected one of {', '.join(self._allowed_extensions)}",
                )
            ]

        if not path.exists():
            return [FieldError("file", f"File not found: {path}")]

        file_size_mb = path.stat().st_size / (1024 * 1024)
        if file_size_mb > self._max_file_size_mb:
            return [
                FieldError(
                    "file",
                    f"File size ({file_size_mb:.2f} MB) exceeds maximum allowed size ({self._max_file_size_mb} MB)",
                )
            ]
        return []
