"""Process-level resources owned by a Celery worker.

The job store engine, the target engine and the Redis client are opened when
the worker starts and disposed when it stops. Tasks look them up through
``get_worker_resources()``, which never creates them on demand.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging

from celery.signals import worker_init, worker_process_init, worker_process_shutdown, worker_shutdown
from redis import Redis
from sqlalchemy import Engine

from excel_importer.core.config import Settings, get_settings
from excel_importer.core.db import Database, create_db_engine
from excel_importer.core.redis_manager import ProgressPublisher, create_redis_client

logger = logging.getLogger(__name__)


@dataclass
class WorkerResources:
    settings: Settings
    job_store: Database
    target_engine: Engine
    redis: Redis
    publisher: ProgressPublisher

    def reset_after_fork(self) -> None:
        # Pooled connections inherited from the parent must not be reused
        self.job_store.engine.dispose(close=False)
        if self.target_engine is not self.job_store.engine:
            self.target_engine.dispose(close=False)
        self.redis.connection_pool.reset()

    def close(self) -> None:
        self.job_store.dispose()
        if self.target_engine is not self.job_store.engine:
            self.target_engine.dispose()
        self.redis.close()


_resources: WorkerResources | None = None


def open_worker_resources(settings: Settings | None = None) -> WorkerResources:
    """Build engines and the Redis client from settings."""

    settings = settings or get_settings()
    job_store = Database.from_url(settings.database_url, settings)
    if settings.target_database_url == settings.database_url:
        target_engine = job_store.engine
    else:
        target_engine = create_db_engine(settings.target_database_url, settings)
    redis = create_redis_client(settings.redis_url)
    publisher = ProgressPublisher(redis, ttl_seconds=settings.progress_ttl_seconds)
    return WorkerResources(
        settings=settings,
        job_store=job_store,
        target_engine=target_engine,
        redis=redis,
        publisher=publisher,
    )


def install(resources: WorkerResources | None) -> None:
    """Make ``resources`` the ones tasks in this process use."""

    global _resources
    _resources = resources


def get_worker_resources() -> WorkerResources:
    if _resources is None:
        msg = "Worker resources are not initialised; start the worker through Celery"
        raise RuntimeError(msg)
    return _resources


def close_worker_resources() -> None:
    global _resources
    if _resources is None:
        return
    resources, _resources = _resources, None
    resources.close()
    logger.info("Worker resources released")


@worker_init.connect
def _on_worker_init(**kwargs) -> None:
    install(open_worker_resources())
    logger.info("Worker resources opened")


@worker_process_init.connect
def _on_worker_process_init(**kwargs) -> None:
    if _resources is None:
        install(open_worker_resources())
    else:
        _resources.reset_after_fork()
    logger.info("Worker child process resources ready")


@worker_process_shutdown.connect
def _on_worker_process_shutdown(**kwargs) -> None:
    close_worker_resources()


@worker_shutdown.connect
def _on_worker_shutdown(**kwargs) -> None:
    close_worker_resources()
