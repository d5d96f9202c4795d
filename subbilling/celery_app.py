"""
Celery app for periodic billing runs and deferred webhook reconciliation.
Usage (dev):
  export SUBBILLING_BROKER_URL=redis://redis:6379/0
  celery -A subbilling.celery_app.app worker -l info
  celery -A subbilling.celery_app.app beat -l info
"""
from celery import Celery
from celery.signals import setup_logging

from subbilling.config import cfg
from subbilling.logging_config import configure_logging

app = Celery(
    "subbilling",
    broker=cfg.BROKER_URL,
    backend=cfg.RESULT_BACKEND or cfg.BROKER_URL,
)

app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "run-billing-cycle": {
            "task": "subbilling.run_billing_cycle",
            "schedule": float(cfg.BILLING_RUN_INTERVAL_MINUTES) * 60.0,
        },
    },
)

app.autodiscover_tasks(["subbilling"])


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
