"""
Webhook reconciler: applies asynchronous gateway results to the ledger.

Events are normalized into WebhookEvent and matched to the subscription's
current tracked attempt:

  finalized       bank transfer awaiting settlement resolved to succeeded/failed
  recorded_early  result arrived while the synchronous call is still in flight;
                  the Payment row is written and the charge path converges on it
  recovered       success for the subscription's current period that the
                  synchronous path recorded as failed (e.g. after a timeout)
  duplicate       the Payment row already carries this status
  stale           the event refers to a superseded attempt; nothing changes
  ignored         unsupported event type

Only the ledger writes; a stale event never mutates a Subscription.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from subbilling.config import Config, cfg
from subbilling.db import session_scope
from subbilling.errors import ConcurrentTransitionError
from subbilling.gateways import PaymentGateway, from_minor_units
from subbilling.ledger import Expectation, LedgerWriter, PaymentAttempt
from subbilling.metrics import WEBHOOK_EVENTS
from subbilling.models import Payment, PaymentMethodClass, PaymentStatus, Subscription, SubscriptionStatus
from subbilling.timeutil import to_naive_utc, utcnow

logger = logging.getLogger("subbilling.reconciler")

_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "charge.succeeded": PaymentStatus.SUCCEEDED,
    "charge.failed": PaymentStatus.FAILED,
}

_METHOD_TYPES = {
    "us_bank_account": PaymentMethodClass.BANK_TRANSFER,
    "card": PaymentMethodClass.CARD,
}


class ReconcileResult(str, Enum):
    FINALIZED = "finalized"
    RECORDED_EARLY = "recorded_early"
    RECOVERED = "recovered"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


def _parse_period_end(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class WebhookEvent:
    event_id: Optional[str]
    event_type: str
    transaction_id: str
    status: PaymentStatus
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    receipt_url: Optional[str] = None
    payment_method: Optional[PaymentMethodClass] = None
    gateway_account_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def subscription_id(self) -> Optional[str]:
        return self.metadata.get("subscription_id")

    @property
    def period_end(self) -> Optional[datetime]:
        return _parse_period_end(self.metadata.get("period_end"))

    @classmethod
    def from_stripe(cls, payload: Dict[str, Any]) -> Optional["WebhookEvent"]:
        """Normalize a Stripe event; None for event types the engine does not act on."""
        event_type = payload.get("type") or ""
        status = _EVENT_STATUS.get(event_type)
        obj = (payload.get("data") or {}).get("object") or {}
        if status is None or not obj:
            return None

        if event_type.startswith("payment_intent."):
            txn = obj.get("id")
            amount = obj.get("amount_received") or obj.get("amount")
            error = obj.get("last_payment_error") or {}
            reason = error.get("message") if isinstance(error, dict) else None
            charge = obj.get("latest_charge")
            receipt = charge.get("receipt_url") if isinstance(charge, dict) else None
            types = obj.get("payment_method_types") or []
            method = _METHOD_TYPES.get(types[0]) if types else None
        else:
            txn = obj.get("payment_intent") or obj.get("id")
            amount = obj.get("amount")
            reason = obj.get("failure_message")
            receipt = obj.get("receipt_url")
            details = obj.get("payment_method_details") or {}
            method = _METHOD_TYPES.get(details.get("type")) if isinstance(details, dict) else None
        if not txn:
            return None
        if status == PaymentStatus.FAILED and not reason:
            reason = "Payment failed"
        return cls(
            event_id=payload.get("id"),
            event_type=event_type,
            transaction_id=txn,
            status=status,
            amount_minor=amount,
            currency=obj.get("currency"),
            failure_reason=reason if status == PaymentStatus.FAILED else None,
            receipt_url=receipt,
            payment_method=method,
            gateway_account_id=payload.get("account"),
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass(frozen=True)
class _Tracked:
    subscription_id: str
    account_id: str
    status: str
    amount: Decimal
    currency: str
    current_period_end: datetime
    last_gateway_payment_id: Optional[str]
    settlement_pending: bool
    claim_live: bool
    payment_status: Optional[str]
    payment_amount: Optional[Decimal]


class WebhookReconciler:
    def __init__(self, session_factory=None, ledger: Optional[LedgerWriter] = None, config: Optional[Config] = None):
        self.config = config or cfg
        self._session_factory = session_factory
        self.ledger = ledger or LedgerWriter(session_factory, config=self.config)

    def handle_payload(self, payload: bytes, signature: Optional[str], gateway: PaymentGateway,
                       now: Optional[datetime] = None) -> ReconcileResult:
        """Verify, normalize and reconcile one raw webhook delivery. Raises WebhookVerificationError."""
        parsed = gateway.verify_webhook(payload, signature)
        event = WebhookEvent.from_stripe(parsed)
        if event is None:
            event_type = parsed.get("type", "unknown") if isinstance(parsed, dict) else "unknown"
            logger.info("ignoring webhook event type %s", event_type)
            WEBHOOK_EVENTS.labels(event_type=event_type, result=ReconcileResult.IGNORED.value).inc()
            return ReconcileResult.IGNORED
        return self.reconcile(event, now=now)

    def reconcile(self, event: WebhookEvent, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utcnow()
        result = self._reconcile(event, now)
        WEBHOOK_EVENTS.labels(event_type=event.event_type, result=result.value).inc()
        logger.info("webhook reconciled", extra={"event_id": event.event_id, "event_type": event.event_type,
                                                 "gateway_payment_id": event.transaction_id, "result": result.value})
        return result

    def _load(self, event: WebhookEvent, now: datetime) -> Optional[_Tracked]:
        lease_cutoff = now - timedelta(seconds=int(self.config.ATTEMPT_LEASE_SECONDS))
        with session_scope(self._session_factory) as session:
            payment = session.query(Payment).filter_by(gateway_payment_id=event.transaction_id).one_or_none()
            subscription_id = event.subscription_id or (payment.subscription_id if payment is not None else None)
            sub = session.get(Subscription, subscription_id) if subscription_id else None
            if sub is None:
                return None
            return _Tracked(
                subscription_id=sub.id,
                account_id=sub.account_id,
                status=sub.status,
                amount=sub.proration_amount if sub.proration_amount is not None else sub.amount,
                currency=sub.currency,
                current_period_end=sub.current_period_end,
                last_gateway_payment_id=sub.last_gateway_payment_id,
                settlement_pending=bool(sub.settlement_pending),
                claim_live=sub.attempt_token is not None and sub.attempt_started_at is not None
                and sub.attempt_started_at >= lease_cutoff,
                payment_status=payment.status if payment is not None else None,
                payment_amount=payment.amount if payment is not None else None,
            )

    def _attempt(self, event: WebhookEvent, tracked: _Tracked) -> PaymentAttempt:
        currency = event.currency or tracked.currency
        if event.amount_minor is not None:
            amount = from_minor_units(event.amount_minor, currency)
        else:
            amount = tracked.payment_amount if tracked.payment_amount is not None else tracked.amount
        return PaymentAttempt(
            amount=amount,
            currency=currency,
            status=event.status,
            account_id=tracked.account_id,
            payment_method=event.payment_method,
            gateway="stripe",
            gateway_account_id=event.gateway_account_id,
            gateway_payment_id=event.transaction_id,
            failure_reason=event.failure_reason,
            receipt_url=event.receipt_url,
        )

    def _reconcile(self, event: WebhookEvent, now: datetime) -> ReconcileResult:
        tracked = self._load(event, now)
        if tracked is None:
            logger.warning("webhook %s for unknown subscription (txn %s)", event.event_id, event.transaction_id)
            return ReconcileResult.UNKNOWN_SUBSCRIPTION
        if tracked.payment_status == event.status.value:
            return ReconcileResult.DUPLICATE

        attempt = self._attempt(event, tracked)

        if tracked.settlement_pending and tracked.last_gateway_payment_id == event.transaction_id:
            expect = Expectation(current_period_end=tracked.current_period_end,
                                 gateway_payment_id=event.transaction_id)
            return self._apply(tracked, attempt, expect, now, ReconcileResult.FINALIZED)

        if tracked.claim_live and tracked.payment_status is None:
            self.ledger.record_unmatched_payment(tracked.subscription_id, attempt, now)
            return ReconcileResult.RECORDED_EARLY

        if (event.status == PaymentStatus.SUCCEEDED and not tracked.claim_live
                and tracked.status != SubscriptionStatus.CANCELED
                and event.period_end is not None and event.period_end == tracked.current_period_end):
            expect = Expectation(current_period_end=tracked.current_period_end)
            return self._apply(tracked, attempt, expect, now, ReconcileResult.RECOVERED)

        if event.status == PaymentStatus.SUCCEEDED:
            # money moved for an attempt the subscription no longer tracks; needs operator review
            logger.error("discarding success for superseded transaction %s on subscription %s",
                         event.transaction_id, tracked.subscription_id)
        else:
            logger.warning("discarding stale %s for transaction %s on subscription %s",
                           event.event_type, event.transaction_id, tracked.subscription_id)
        return ReconcileResult.STALE

    def _apply(self, tracked: _Tracked, attempt: PaymentAttempt, expect: Expectation, now: datetime,
               result: ReconcileResult) -> ReconcileResult:
        try:
            self.ledger.record_outcome(tracked.subscription_id, attempt, expect, now, actor="webhook")
        except ConcurrentTransitionError as e:
            logger.warning("webhook for %s lost the race: %s", attempt.gateway_payment_id, e)
            return ReconcileResult.STALE
        return result
