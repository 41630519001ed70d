"""Asynchronous spreadsheet-to-table bulk import pipeline."""

__version__ = "0.1.0"
