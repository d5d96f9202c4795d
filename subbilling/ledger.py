"""
Ledger writer: the only code that mutates Subscription and Payment rows.

Every write here is a conditional UPDATE guarded by the state the caller
observed (period end, failure count, claim token or tracked transaction id).
If the guard matches no row the whole transaction is rolled back and
ConcurrentTransitionError is raised, so a Subscription change never commits
without its Payment row or vice versa.

Payments are keyed on gateway_payment_id: recording an outcome for a
transaction that already has a row (written by the webhook path or by an
earlier attempt) updates that row in place.
"""
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subbilling.audit import record_audit
from subbilling.config import Config, cfg
from subbilling.db import session_scope
from subbilling.errors import ConcurrentTransitionError, wrap_ledger_errors
from subbilling.models import (
    Payment, PaymentMethodClass, PaymentStatus, Subscription, SubscriptionStatus
)
from subbilling.policy import DunningPolicy, advance_period

logger = logging.getLogger("subbilling.ledger")

MANUAL_PAYMENT_REQUIRED = "Manual payment required"


@dataclass(frozen=True)
class PaymentAttempt:
    amount: Decimal
    currency: str
    status: PaymentStatus
    account_id: Optional[str] = None
    payment_method: Optional[PaymentMethodClass] = None
    gateway: Optional[str] = None
    gateway_account_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    receipt_url: Optional[str] = None


@dataclass(frozen=True)
class Expectation:
    """What a writer assumes about the subscription row; the write is abandoned if it no longer holds."""
    current_period_end: datetime
    attempt_token: Optional[str] = None
    # settlement path: the row must still track this transaction as pending
    gateway_payment_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerResult:
    payment_id: Optional[int]
    payment_status: PaymentStatus
    gateway_payment_id: Optional[str]
    subscription_status: str
    payment_failure_count: int
    current_period_start: datetime
    current_period_end: datetime


class LedgerWriter:
    def __init__(self, session_factory=None, policy: Optional[DunningPolicy] = None, config: Optional[Config] = None):
        self._session_factory = session_factory
        self.config = config or cfg
        self.policy = policy or DunningPolicy.from_config(self.config)

    # ----- single-flight claim -------------------------------------------------

    @wrap_ledger_errors
    def claim(self, subscription_id: str, current_period_end: datetime, now: datetime) -> Optional[str]:
        """
        Mark one charge attempt in flight for the subscription's current period.
        Returns the claim token, or None if another attempt holds a live claim,
        the period moved, or a bank transfer is awaiting settlement.
        """
        token = uuid.uuid4().hex
        lease_cutoff = now - timedelta(seconds=int(self.config.ATTEMPT_LEASE_SECONDS))
        with session_scope(self._session_factory) as session:
            n = session.query(Subscription).filter(
                Subscription.id == subscription_id,
                Subscription.current_period_end == current_period_end,
                Subscription.settlement_pending.is_(False),
                or_(Subscription.attempt_token.is_(None), Subscription.attempt_started_at < lease_cutoff),
            ).update({"attempt_token": token, "attempt_started_at": now}, synchronize_session=False)
        return token if n == 1 else None

    @wrap_ledger_errors
    def release_claim(self, subscription_id: str, token: str) -> bool:
        with session_scope(self._session_factory) as session:
            n = session.query(Subscription).filter(
                Subscription.id == subscription_id, Subscription.attempt_token == token,
            ).update({"attempt_token": None, "attempt_started_at": None}, synchronize_session=False)
        return n == 1

    # ----- outcomes --------------------------------------------------------------

    @wrap_ledger_errors
    def record_outcome(self, subscription_id: str, attempt: PaymentAttempt, expect: Expectation,
                       now: datetime, actor: str = "system") -> LedgerResult:
        """
        Persist one resolved attempt and the subscription transition it implies,
        in a single transaction.
        """
        for tries in (1, 2):
            try:
                with session_scope(self._session_factory) as session:
                    return self._apply_outcome(session, subscription_id, attempt, expect, now, actor)
            except IntegrityError:
                # another writer inserted the same gateway_payment_id first; the retry updates it
                if tries == 2:
                    raise
                logger.info("payment %s inserted concurrently; retrying as update", attempt.gateway_payment_id)

    @wrap_ledger_errors
    def mark_manual_payment_required(self, subscription_id: str, expect: Expectation, now: datetime,
                                     actor: str = "system") -> str:
        with session_scope(self._session_factory) as session:
            n = session.query(Subscription).filter(
                *self._guard(subscription_id, expect)
            ).update({
                "status": SubscriptionStatus.UNPAID.value,
                "last_payment_error": MANUAL_PAYMENT_REQUIRED,
                "last_payment_attempt_at": now,
                "attempt_token": None,
                "attempt_started_at": None,
                "updated_at": now,
            }, synchronize_session=False)
            if n != 1:
                raise ConcurrentTransitionError(f"subscription {subscription_id} changed before manual-payment update")
            record_audit(session, "billing.manual_payment_required", actor, "subscription", subscription_id)
        return SubscriptionStatus.UNPAID.value

    @wrap_ledger_errors
    def record_unmatched_payment(self, subscription_id: str, attempt: PaymentAttempt, now: datetime,
                                 actor: str = "webhook") -> int:
        """
        Store a terminal gateway result that arrived before the synchronous path
        recorded its attempt. The subscription is left alone; the synchronous
        path converges on this row when it records its outcome.
        """
        with session_scope(self._session_factory) as session:
            payment = self._upsert_payment(session, subscription_id, attempt, None, now)
            record_audit(session, "billing.webhook_recorded_early", actor, "payment", attempt.gateway_payment_id,
                         {"subscription_id": subscription_id, "status": attempt.status.value})
            return payment.id

    # ----- internals -------------------------------------------------------------

    @staticmethod
    def _guard(subscription_id: str, expect: Expectation):
        guard = [Subscription.id == subscription_id,
                 Subscription.current_period_end == expect.current_period_end]
        if expect.attempt_token is not None:
            guard.append(Subscription.attempt_token == expect.attempt_token)
        if expect.gateway_payment_id is not None:
            guard.append(Subscription.last_gateway_payment_id == expect.gateway_payment_id)
            guard.append(Subscription.settlement_pending.is_(True))
        return guard

    @staticmethod
    def _check_expectation(sub: Subscription, expect: Expectation):
        if sub.current_period_end != expect.current_period_end:
            raise ConcurrentTransitionError(f"subscription {sub.id} period moved")
        if expect.attempt_token is not None and sub.attempt_token != expect.attempt_token:
            raise ConcurrentTransitionError(f"subscription {sub.id} claim lost")
        if expect.gateway_payment_id is not None and (
                sub.last_gateway_payment_id != expect.gateway_payment_id or not sub.settlement_pending):
            raise ConcurrentTransitionError(f"subscription {sub.id} no longer awaits {expect.gateway_payment_id}")

    def _converge(self, session: Session, sub: Subscription, attempt: PaymentAttempt) -> PaymentAttempt:
        """Adopt a terminal result the webhook already stored for the same attempt."""
        if attempt.status == PaymentStatus.SUCCEEDED:
            return attempt
        if not attempt.gateway_payment_id:
            # no transaction id (e.g. timeout): a success stored while this claim was held wins
            if attempt.status != PaymentStatus.FAILED or sub.attempt_started_at is None:
                return attempt
            early = session.query(Payment).filter(
                Payment.subscription_id == sub.id,
                Payment.status == PaymentStatus.SUCCEEDED.value,
                Payment.created_at >= sub.attempt_started_at,
            ).order_by(Payment.id.desc()).first()
            if early is None:
                return attempt
            logger.info("converging untracked failure on stored success %s", early.gateway_payment_id)
            return dataclasses.replace(attempt, status=PaymentStatus.SUCCEEDED, failure_reason=None,
                                       gateway_payment_id=early.gateway_payment_id,
                                       receipt_url=early.receipt_url)
        existing = session.query(Payment).filter_by(gateway_payment_id=attempt.gateway_payment_id).one_or_none()
        if existing is None or existing.status == PaymentStatus.PENDING.value:
            return attempt
        adopt = attempt.status == PaymentStatus.PENDING or existing.status == PaymentStatus.SUCCEEDED.value
        if not adopt:
            return attempt
        logger.info("converging %s on stored %s result", attempt.gateway_payment_id, existing.status)
        return dataclasses.replace(
            attempt,
            status=PaymentStatus(existing.status),
            failure_reason=existing.failure_reason if existing.status == PaymentStatus.FAILED.value else None,
            receipt_url=attempt.receipt_url or existing.receipt_url,
        )

    def _transition(self, sub: Subscription, attempt: PaymentAttempt, now: datetime):
        if attempt.status == PaymentStatus.SUCCEEDED:
            changes = advance_period(sub.current_period_end, sub.billing_cycle).as_changes()
            changes.update(last_payment_success_at=now, settlement_pending=False,
                           last_gateway_payment_id=attempt.gateway_payment_id)
            return changes, None
        if attempt.status == PaymentStatus.PENDING:
            return {"settlement_pending": True, "last_gateway_payment_id": attempt.gateway_payment_id}, None
        failure = self.policy.on_failure(sub.payment_failure_count, sub.grace_period_end, attempt.failure_reason, now)
        changes = failure.as_changes()
        changes.update(settlement_pending=False, last_gateway_payment_id=attempt.gateway_payment_id)
        return changes, failure

    def _apply_outcome(self, session: Session, subscription_id: str, attempt: PaymentAttempt,
                       expect: Expectation, now: datetime, actor: str) -> LedgerResult:
        sub = session.query(Subscription).filter_by(id=subscription_id).with_for_update().one_or_none()
        if sub is None:
            raise ConcurrentTransitionError(f"subscription {subscription_id} not found")
        self._check_expectation(sub, expect)
        attempt = self._converge(session, sub, attempt)
        changes, failure = self._transition(sub, attempt, now)
        changes.update(attempt_token=None, attempt_started_at=None, updated_at=now)
        if expect.attempt_token is not None:
            changes["last_payment_attempt_at"] = now

        guard = self._guard(subscription_id, expect)
        guard.append(Subscription.payment_failure_count == sub.payment_failure_count)
        n = session.query(Subscription).filter(*guard).update(changes, synchronize_session=False)
        if n != 1:
            raise ConcurrentTransitionError(f"subscription {subscription_id} changed during outcome write")

        failure_count = changes.get("payment_failure_count", sub.payment_failure_count)
        payment = self._upsert_payment(session, subscription_id, attempt,
                                       failure_count if failure is not None else None, now)

        details: Dict[str, Any] = {"gateway_payment_id": attempt.gateway_payment_id, "amount": str(attempt.amount),
                                   "status": attempt.status.value, "failure_count": failure_count}
        if attempt.failure_reason and attempt.status == PaymentStatus.FAILED:
            details["reason"] = attempt.failure_reason
        action = {
            PaymentStatus.SUCCEEDED: "billing.charge_succeeded",
            PaymentStatus.PENDING: "billing.charge_pending",
            PaymentStatus.FAILED: "billing.charge_failed",
        }[attempt.status]
        if expect.gateway_payment_id is not None:
            action = "billing.webhook_finalized"
        record_audit(session, action, actor, "subscription", subscription_id, details)
        if failure is not None and failure.suspended:
            record_audit(session, "billing.subscription_suspended", actor, "subscription", subscription_id,
                         {"failure_count": failure_count})

        return LedgerResult(
            payment_id=payment.id,
            payment_status=attempt.status,
            gateway_payment_id=attempt.gateway_payment_id,
            subscription_status=changes.get("status", sub.status),
            payment_failure_count=failure_count,
            current_period_start=changes.get("current_period_start", sub.current_period_start),
            current_period_end=changes.get("current_period_end", sub.current_period_end),
        )

    @staticmethod
    def _upsert_payment(session: Session, subscription_id: str, attempt: PaymentAttempt,
                        failure_count: Optional[int], now: datetime) -> Payment:
        payment = None
        if attempt.gateway_payment_id:
            payment = session.query(Payment).filter_by(
                gateway_payment_id=attempt.gateway_payment_id).with_for_update().one_or_none()
        if payment is None:
            payment = Payment(
                subscription_id=subscription_id,
                account_id=attempt.account_id,
                amount=attempt.amount,
                currency=attempt.currency,
                gateway=attempt.gateway,
                gateway_account_id=attempt.gateway_account_id,
                gateway_payment_id=attempt.gateway_payment_id,
                payment_type="subscription",
                created_at=now,
            )
            session.add(payment)
        payment.status = attempt.status.value
        if attempt.payment_method is not None:
            payment.payment_method = attempt.payment_method.value
        payment.failure_reason = attempt.failure_reason if attempt.status == PaymentStatus.FAILED else None
        if failure_count is not None:
            payment.failure_count = failure_count
        payment.receipt_url = attempt.receipt_url or payment.receipt_url
        payment.paid_at = (payment.paid_at or now) if attempt.status == PaymentStatus.SUCCEEDED else None
        payment.updated_at = now
        session.flush()
        return payment
