"""
Celery application for crawl and analysis work.

Queues:
- crawl_queue:    one sequential crawl per worker process; network-bound,
                  long-running (bounded by CELERY_TASK_TIME_LIMIT)
- analysis_queue: link graph, duplicate content and issue aggregation
                  for a finished session
- default:        housekeeping (stale session sweep)

Run e.g.:
    celery -A crawlgraph.workers.celery_app worker -Q crawl_queue -c 4
    celery -A crawlgraph.workers.celery_app worker -Q analysis_queue,default
    celery -A crawlgraph.workers.celery_app beat
"""

import structlog
from celery import Celery
from celery.signals import after_setup_logger, task_postrun, task_prerun, worker_ready
from kombu import Exchange, Queue

from crawlgraph.core.config import get_settings

settings = get_settings()

TASKS_MODULE = "crawlgraph.workers.crawl_tasks"

# queue name -> routing key; each queue gets its own direct exchange
QUEUES = {
    "default": "default",
    "crawl_queue": "crawl",
    "analysis_queue": "analysis",
}

STALE_SWEEP_SECONDS = 15 * 60

celery_app = Celery(
    "crawlgraph",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[TASKS_MODULE],
)

celery_app.conf.update(
    task_queues=tuple(
        Queue(name, Exchange(key, type="direct"), routing_key=key)
        for name, key in QUEUES.items()
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",
    task_routes={
        f"{TASKS_MODULE}.run_crawl_task": {"queue": "crawl_queue"},
        f"{TASKS_MODULE}.run_analysis_task": {"queue": "analysis_queue"},
        f"{TASKS_MODULE}.fail_stale_crawls": {"queue": "default"},
    },

    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,

    # A crawl holds its worker for minutes; ack on completion and never prefetch
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    task_max_retries=settings.CELERY_MAX_RETRIES,

    # Reports live in the database; task results are only a summary
    result_expires=86400,

    worker_send_task_events=True,
    task_send_sent_event=True,

    beat_schedule={
        "fail-stale-crawls": {
            "task": f"{TASKS_MODULE}.fail_stale_crawls",
            "schedule": STALE_SWEEP_SECONDS,
        },
    },
)


# ─────────────────────────────────────────────
# Signals
# ─────────────────────────────────────────────

@after_setup_logger.connect
def setup_worker_logging(logger, *args, **kwargs):
    from crawlgraph.core.logging import configure_logging
    configure_logging(component="worker")


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    structlog.get_logger("crawlgraph.worker").info(
        "Worker ready",
        hostname=sender.hostname,
        queues=list(QUEUES),
    )


@task_prerun.connect
def bind_task_context(task_id=None, task=None, args=None, kwargs=None, **_):
    # Both task kinds carry the session id first (run_analysis_task in a dict)
    session_id = None
    if args:
        first = args[0]
        session_id = first.get("session_id") if isinstance(first, dict) else first
    structlog.contextvars.bind_contextvars(task=task.name if task else None, task_id=task_id, session_id=session_id)


@task_postrun.connect
def clear_task_context(**_):
    structlog.contextvars.unbind_contextvars("task", "task_id", "session_id")
