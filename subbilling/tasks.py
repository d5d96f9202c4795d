"""
Celery tasks.
- subbilling.run_billing_cycle: periodic billing run (beat) or a targeted run
- subbilling.reconcile_webhook_event: reconcile an already-verified gateway event
"""
import logging
from typing import Any, Dict, Optional

from celery import shared_task

from subbilling.reconciler import ReconcileResult, WebhookEvent, WebhookReconciler
from subbilling.scheduler import BillingScheduler, BillingTarget, CallerContext

logger = logging.getLogger("subbilling.tasks")


@shared_task(bind=True, name="subbilling.run_billing_cycle")
def run_billing_cycle(self, subscription_id: Optional[str] = None, account_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        summary = BillingScheduler().run(
            target=BillingTarget(subscription_id=subscription_id, account_id=account_id),
            caller=CallerContext.scheduler(),
        )
    except Exception:
        logger.exception("billing run failed")
        raise
    return {k: v for k, v in summary.to_dict().items() if k != "results"}


@shared_task(bind=True, name="subbilling.reconcile_webhook_event")
def reconcile_webhook_event(self, event: Dict[str, Any]) -> str:
    normalized = WebhookEvent.from_stripe(event)
    if normalized is None:
        return ReconcileResult.IGNORED.value
    return WebhookReconciler().reconcile(normalized).value
