"""Celery configuration for the import worker pool."""

from datetime import timedelta

from kombu import Exchange, Queue

from excel_importer.core.config import get_settings

settings = get_settings()

# ==============================================================================
# BROKER & BACKEND CONFIGURATION
# ==============================================================================

broker_connection_retry_on_startup = True
broker_connection_retry = True
broker_connection_max_retries = 10

broker_pool_limit = 10
broker_heartbeat = 30

result_backend_transport_options = {
    "socket_keepalive": True,
    "socket_timeout": 30,
    "retry_on_timeout": True,
}

result_expires = 3600

# ==============================================================================
# TASK EXECUTION SETTINGS
# ==============================================================================

# ACK after the job concludes so a lost worker hands the job back to the queue
task_acks_late = True
task_reject_on_worker_lost = True
worker_prefetch_multiplier = 1

task_track_started = True
task_send_sent_event = True

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
timezone = "UTC"
enable_utc = True

# ==============================================================================
# RETRY POLICY - Exponential Backoff
# ==============================================================================

# Delays are retry_backoff_seconds * 2^n: 5s, 10s, 20s with the defaults
task_max_retries = settings.import_max_retries
task_retry_backoff = settings.retry_backoff_seconds
task_retry_backoff_max = settings.retry_backoff_max_seconds
task_retry_jitter = False

# ==============================================================================
# QUEUE DEFINITIONS
# ==============================================================================

default_exchange = Exchange("default", type="direct", durable=True)
import_exchange = Exchange("import_tasks", type="direct", durable=True)

task_queues = (
    Queue(
        "default",
        exchange=default_exchange,
        routing_key="default",
        queue_arguments={
            "x-message-ttl": 3600000,
        },
        durable=True,
    ),
    # Spreadsheet imports
    Queue(
        "import_queue",
        exchange=import_exchange,
        routing_key="import.spreadsheet",
        queue_arguments={
            "x-message-ttl": 7200000,  # 2 hours TTL for long-running imports
            "x-dead-letter-exchange": "dlx",
            "x-dead-letter-routing-key": "import.failed",
        },
        durable=True,
    ),
    Queue(
        "failed_tasks",
        exchange=Exchange("dlx", type="direct", durable=True),
        routing_key="import.failed",
        durable=True,
        queue_arguments={
            "x-message-ttl": 604800000,  # 7 days, matching failed job retention
        },
    ),
)

task_default_queue = "default"
task_default_exchange = "default"
task_default_routing_key = "default"

# ==============================================================================
# TASK ROUTING
# ==============================================================================

task_routes = {
    "process_import": {
        "queue": "import_queue",
        "routing_key": "import.spreadsheet",
    },
    "purge_expired_jobs": {"queue": "default", "routing_key": "default"},
    "detect_stalled_jobs": {"queue": "default", "routing_key": "default"},
}

# ==============================================================================
# WORKER CONFIGURATION
# ==============================================================================

worker_concurrency = settings.worker_concurrency
worker_max_tasks_per_child = 1000
worker_disable_rate_limits = False

worker_send_task_events = True
worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
worker_task_log_format = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"

# ==============================================================================
# MESSAGE PERSISTENCE
# ==============================================================================

task_default_delivery_mode = 2
result_persistent = True

# ==============================================================================
# BEAT SCHEDULER
# ==============================================================================

beat_schedule = {
    "purge-expired-import-jobs": {
        "task": "purge_expired_jobs",
        "schedule": timedelta(hours=1),
    },
    "detect-stalled-import-jobs": {
        "task": "detect_stalled_jobs",
        "schedule": timedelta(seconds=settings.stalled_check_interval_seconds),
    },
}
beat_scheduler = "celery.beat:PersistentScheduler"
beat_schedule_filename = "/tmp/celerybeat-schedule"

# ==============================================================================
# TASK ANNOTATIONS (task-specific overrides)
# ==============================================================================

task_annotations = {
    "process_import": {
        "rate_limit": settings.job_rate_limit,
        "time_limit": settings.task_time_limit_seconds,
        "soft_time_limit": settings.task_soft_time_limit_seconds,
    },
}

task_ignore_result = False
task_store_errors_even_if_ignored = True
task_protocol = 2
