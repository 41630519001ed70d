"""Redis progress fan-out for running import jobs."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import json
import logging
import time
from typing import TYPE_CHECKING, Any
from uuid import UUID

from redis import Redis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from excel_importer.schemas.import_job import JobProgress

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_TTL_SECONDS = 60 * 60  # keep hashes for 1 hour after the last update
DEFAULT_NAMESPACE = "import_progress"
PROGRESS_PUBLISH_INTERVAL = 1.0  # seconds between non-forced publishes


def create_redis_client(url: str, *, decode_responses: bool = False) -> Redis:
    """Return a configured synchronous Redis client instance."""

    kwargs: dict[str, Any] = {
        "decode_responses": decode_responses,
        "health_check_interval": 30,
        "socket_keepalive": True,
    }

    # Only include encoding parameter when decode_responses is True
    if decode_responses:
        kwargs["encoding"] = "utf-8"

    return Redis.from_url(url, **kwargs)


class ProgressPublisher:
    """Stores the latest progress snapshot per job and broadcasts it on pub/sub.

    The job store remains the source of truth for status queries; this is the
    low-latency channel for live listeners. Redis failures never fail an import.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = DEFAULT_PROGRESS_TTL_SECONDS,
        min_interval: float = PROGRESS_PUBLISH_INTERVAL,
    ) -> None:
        self._redis = redis
        self._namespace = namespace
        self._ttl_seconds = ttl_seconds
        self._min_interval = min_interval
        self._last_publish: dict[str, float] = {}

    def hash_key(self, job_id: str | UUID) -> str:
        return f"{self._namespace}:hash:{job_id}"

    def channel(self, job_id: str | UUID) -> str:
        return f"{self._namespace}:channel:{job_id}"

    def publish(
        self,
        job_id: str | UUID,
        status: str,
        progress: JobProgress | None = None,
        *,
        stage: str | None = None,
        error_message: str | None = None,
        force: bool = False,
    ) -> bool:
        """Write the snapshot hash and publish it.

        Returns False when the update was throttled or Redis was unavailable.
        """

        key = str(job_id)
        now = time.monotonic()
        last = self._last_publish.get(key)
        if not force and last is not None and now - last < self._min_interval:
            return False

        payload: dict[str, Any] = {"job_id": key, "status": status}
        if progress is not None:
            payload.update(progress.model_dump(mode="json", exclude_none=True))
        if stage:
            payload["stage"] = stage
        if error_message:
            payload["error_message"] = error_message
        payload.setdefault("updated_at", datetime.now(timezone.utc).isoformat())

        try:
            hash_key = self.hash_key(job_id)
            serialized = {name: self._encode_value(value) for name, value in payload.items()}
            self._redis.hset(hash_key, mapping=serialized)
            self._redis.expire(hash_key, self._ttl_seconds)
            self._redis.publish(self.channel(job_id), json.dumps(payload, default=self._json_default))
        except RedisError as exc:
            logger.warning(f"Failed to publish progress update for job {key}: {exc}")
            return False

        self._last_publish[key] = now
        if status in ("completed", "failed", "cancelled"):
            self._last_publish.pop(key, None)
        return True

    def get_progress(self, job_id: str | UUID) -> dict[str, Any] | None:
        """Return the stored snapshot for the given job, if present."""

        raw = self._redis.hgetall(self.hash_key(job_id))
        if not raw:
            return None
        return {self._decode(name): self._decode_value(value) for name, value in raw.items()}

    def _encode_value(self, value: Any) -> str:
        return json.dumps(value, default=self._json_default)

    def _decode_value(self, value: str | bytes) -> Any:
        value = self._decode(value)
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8")
        return value

    @staticmethod
    def _json_default(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.astimezone(timezone.utc).isoformat()
        if isinstance(value, (UUID, Decimal)):
            return str(value)
        return value
