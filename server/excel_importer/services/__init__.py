"""Services module for the import pipeline."""
from __future__ import annotations

from .bulk_loader import BatchInsertResult, BulkLoader, RowFailure
from .import_orchestrator import ImportOrchestrator, ImportOutcome
from .import_service import ImportRepository, ImportService
from .import_validator import FieldError, ImportValidator, ValidationResult
from .spreadsheet_reader import Batch, SpreadsheetReader

__all__ = [
    "Batch",
    "BatchInsertResult",
    "BulkLoader",
    "FieldError",
    "ImportOrchestrator",
    "ImportOutcome",
    "ImportRepository",
    "ImportService",
    "ImportValidator",
    "RowFailure",
    "SpreadsheetReader",
    "ValidationResult",
]
