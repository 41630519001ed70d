"""Core application utilities and infrastructure."""
from .config import Settings, get_settings
from .db import Database, create_db_engine
from .errors import (
    FatalImportError,
    ImportIOError,
    ImportPipelineError,
    ImportValidationError,
    NotFoundError,
    RowError,
    SchemaError,
)
from .redis_manager import (
    DEFAULT_NAMESPACE,
    DEFAULT_PROGRESS_TTL_SECONDS,
    ProgressPublisher,
    create_redis_client,
)

__all__ = [
    "Settings",
    "get_settings",
    "Database",
    "create_db_engine",
    "ImportPipelineError",
    "NotFoundError",
    "ImportIOError",
    "SchemaError",
    "ImportValidationError",
    "RowError",
    "FatalImportError",
    "ProgressPublisher",
    "create_redis_client",
    "DEFAULT_NAMESPACE",
    "DEFAULT_PROGRESS_TTL_SECONDS",
]
