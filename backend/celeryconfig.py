"""
Celery configuration for the fiscal document pipeline workers.

Loaded by `celery_app.config_from_object("celeryconfig")` in fiscalflow/tasks/__init__.py.
All broker/result-backend URLs come from environment variables,
defaulting to localhost for local dev.
"""

import os

# ═══════════════════════════════════════════════════════════
#  Broker & Result Backend
# ═══════════════════════════════════════════════════════════

broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# ═══════════════════════════════════════════════════════════
#  Serialization
# ═══════════════════════════════════════════════════════════

task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# ═══════════════════════════════════════════════════════════
#  Timezone
# ═══════════════════════════════════════════════════════════

timezone = "UTC"
enable_utc = True

# ═══════════════════════════════════════════════════════════
#  Task Execution
# ═══════════════════════════════════════════════════════════

# Acknowledge tasks after they complete
task_acks_late = True
task_reject_on_worker_lost = True

# One task at a time per worker process
worker_prefetch_multiplier = 1

# Pipeline tasks can take a while (inference calls, rate-limited CNPJ lookups)
task_soft_time_limit = 1800   # 30 min: raises SoftTimeLimitExceeded
task_time_limit = 1860        # 31 min: hard kill

# ═══════════════════════════════════════════════════════════
#  Result Expiry
# ═══════════════════════════════════════════════════════════

result_expires = 86400

# ═══════════════════════════════════════════════════════════
#  Worker Settings
# ═══════════════════════════════════════════════════════════

# Restart worker after N tasks
worker_max_tasks_per_child = 50

# Disable events by default (reduces Redis load)
# Enable with: celery -A fiscalflow.tasks worker -E
worker_send_task_events = False
task_send_sent_event = False

# ═══════════════════════════════════════════════════════════
#  Task Routes (separate queues per workload)
# ═══════════════════════════════════════════════════════════
# Run dedicated workers per queue:
#   celery -A fiscalflow.tasks worker -Q pipeline   (one job per task, full pipeline)
#   celery -A fiscalflow.tasks worker -Q default    (everything else)

task_routes = {
    "fiscalflow.tasks.processing_tasks.*": {"queue": "pipeline"},
}

task_default_queue = "default"
