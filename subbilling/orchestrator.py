"""
Charge orchestration for one subscription.

- guards: canceled, awaiting bank settlement, not yet due (automatic triggers only)
- single-flight claim via the ledger so concurrent triggers never double-charge
- payment method fallback: linked bank account first, then the default card
- every gateway call runs under a timeout; expiry counts as "gateway unavailable", an unknown
  outcome that ends the attempt without trying the next method
- the resolved attempt is handed to the ledger, which applies the dunning policy
"""
import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from subbilling.config import Config, cfg
from subbilling.db import session_scope
from subbilling.errors import ConcurrentTransitionError, ConfigurationError, LedgerWriteError
from subbilling.gateways import ChargeRequest, ChargeResult, PaymentGateway, create_gateway
from subbilling.ledger import MANUAL_PAYMENT_REQUIRED, Expectation, LedgerWriter, PaymentAttempt
from subbilling.metrics import CHARGE_ATTEMPTS, CHARGE_OUTCOMES
from subbilling.models import (
    MANUAL_GATEWAY, BillingAccount, PaymentMethodClass, PaymentStatus, Subscription, SubscriptionStatus
)
from subbilling.policy import DEFAULT_FAILURE_REASON
from subbilling.timeutil import utcnow

logger = logging.getLogger("subbilling.orchestrator")

NOT_DUE = "Subscription not due yet"
NO_PAYMENT_METHOD = "No payment method configured"
ACCOUNT_NOT_CONNECTED = "Payment gateway account not connected"


class OutcomeKind(str, Enum):
    CHARGED = "charged"
    PENDING = "pending"
    FAILED = "failed"
    MANUAL_PAYMENT_REQUIRED = "manual_payment_required"
    SKIPPED = "skipped"


@dataclass
class ChargeOutcome:
    subscription_id: str
    kind: OutcomeKind
    reason: Optional[str] = None
    payment_id: Optional[int] = None
    gateway_payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    subscription_status: Optional[str] = None
    failure_count: Optional[int] = None

    @property
    def success(self) -> bool:
        # a processing bank transfer counts as success until the webhook says otherwise
        return self.kind in (OutcomeKind.CHARGED, OutcomeKind.PENDING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "success": self.success,
            "outcome": self.kind.value,
            "error": None if self.success else self.reason,
            "payment_id": self.payment_id,
            "gateway_payment_id": self.gateway_payment_id,
            "payment_method": self.payment_method,
            "status": self.subscription_status,
            "failure_count": self.failure_count,
        }


@dataclass(frozen=True)
class BillingContext:
    """Read-only snapshot of a subscription and its account's payment configuration."""
    subscription_id: str
    account_id: str
    plan_name: Optional[str]
    status: str
    amount: Decimal
    currency: str
    proration_amount: Optional[Decimal]
    current_period_end: datetime
    payment_failure_count: int
    settlement_pending: bool
    gateway: Optional[str]
    gateway_account_id: Optional[str]
    gateway_connected: bool
    card_payment_method_id: Optional[str]
    bank_payment_method_id: Optional[str]

    @classmethod
    def from_rows(cls, sub: Subscription, account: BillingAccount) -> "BillingContext":
        return cls(
            subscription_id=sub.id,
            account_id=sub.account_id,
            plan_name=sub.plan_name,
            status=sub.status,
            amount=sub.amount,
            currency=sub.currency,
            proration_amount=sub.proration_amount,
            current_period_end=sub.current_period_end,
            payment_failure_count=sub.payment_failure_count or 0,
            settlement_pending=bool(sub.settlement_pending),
            gateway=account.gateway,
            gateway_account_id=account.gateway_account_id,
            gateway_connected=bool(account.gateway_connected),
            card_payment_method_id=account.default_payment_method_id,
            bank_payment_method_id=account.bank_account_payment_method_id,
        )

    @property
    def uses_manual_payment(self) -> bool:
        return not self.gateway or self.gateway == MANUAL_GATEWAY

    @property
    def charge_amount(self) -> Decimal:
        return self.proration_amount if self.proration_amount is not None else self.amount

    def payment_methods(self) -> List[Tuple[PaymentMethodClass, str]]:
        methods = []
        if self.bank_payment_method_id:
            methods.append((PaymentMethodClass.BANK_TRANSFER, self.bank_payment_method_id))
        if self.card_payment_method_id:
            methods.append((PaymentMethodClass.CARD, self.card_payment_method_id))
        return methods


def idempotency_key(ctx: BillingContext, method: PaymentMethodClass) -> str:
    """Stable per (subscription, period, attempt number, method); a repeated call reuses the gateway's result."""
    return "sub-{}-{}-a{}-{}".format(ctx.subscription_id, ctx.current_period_end.strftime("%Y%m%dT%H%M%S"),
                                     ctx.payment_failure_count, method.value)


_gateway_executor: Optional[ThreadPoolExecutor] = None
_gateway_executor_lock = threading.Lock()


def gateway_executor(config: Config) -> ThreadPoolExecutor:
    """Process-wide pool for gateway calls, sized from the first caller's config."""
    global _gateway_executor
    with _gateway_executor_lock:
        if _gateway_executor is None:
            _gateway_executor = ThreadPoolExecutor(max_workers=max(4, 2 * int(config.SCHEDULER_MAX_WORKERS)),
                                                   thread_name_prefix="subbilling-gateway")
        return _gateway_executor


class ChargeOrchestrator:
    def __init__(self, session_factory=None, gateway_factory: Callable[..., PaymentGateway] = create_gateway,
                 ledger: Optional[LedgerWriter] = None, config: Optional[Config] = None,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.config = config or cfg
        self._session_factory = session_factory
        self._gateway_factory = gateway_factory
        self.ledger = ledger or LedgerWriter(session_factory, config=self.config)
        self._executor = executor or gateway_executor(self.config)

    def charge(self, subscription_id: str, manual: bool = False, now: Optional[datetime] = None,
               actor: str = "scheduler") -> ChargeOutcome:
        """
        Attempt to collect the current period's payment.
        manual=True (explicit operator or retry trigger) bypasses the due-date guard.
        """
        now = now or utcnow()
        ctx = self._load(subscription_id)
        if ctx is None:
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.FAILED, "subscription not found"))
        if ctx.status == SubscriptionStatus.CANCELED:
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.SKIPPED, "subscription canceled",
                                              subscription_status=ctx.status))
        if ctx.settlement_pending:
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.SKIPPED, "bank transfer awaiting settlement",
                                              subscription_status=ctx.status))
        if not manual and ctx.current_period_end > now:
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.SKIPPED, NOT_DUE,
                                              subscription_status=ctx.status))

        try:
            token = self.ledger.claim(subscription_id, ctx.current_period_end, now)
        except LedgerWriteError as e:
            logger.error("could not claim subscription %s: %s", subscription_id, e)
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.FAILED, "ledger write failed"))
        if token is None:
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.SKIPPED, "charge already in flight",
                                              subscription_status=ctx.status))

        expect = Expectation(current_period_end=ctx.current_period_end, attempt_token=token)
        try:
            return self._finish(self._charge_claimed(ctx, expect, now, actor))
        except ConcurrentTransitionError as e:
            logger.warning("subscription %s moved during charge: %s", subscription_id, e)
            self._release(subscription_id, token)
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.FAILED, "concurrent update"))
        except LedgerWriteError as e:
            # the gateway result is in the log line; the next attempt reuses the same idempotency key
            logger.error("ledger write failed for subscription %s: %s", subscription_id, e)
            self._release(subscription_id, token)
            return self._finish(ChargeOutcome(subscription_id, OutcomeKind.FAILED, "ledger write failed"))

    def _load(self, subscription_id: str) -> Optional[BillingContext]:
        with session_scope(self._session_factory) as session:
            sub = session.get(Subscription, subscription_id)
            if sub is None:
                return None
            account = session.get(BillingAccount, sub.account_id)
            if account is None:
                logger.error("subscription %s has no billing account %s", subscription_id, sub.account_id)
                return None
            return BillingContext.from_rows(sub, account)

    def _charge_claimed(self, ctx: BillingContext, expect: Expectation, now: datetime, actor: str) -> ChargeOutcome:
        if ctx.uses_manual_payment:
            status = self.ledger.mark_manual_payment_required(ctx.subscription_id, expect, now, actor)
            logger.info("subscription %s requires manual payment", ctx.subscription_id)
            return ChargeOutcome(ctx.subscription_id, OutcomeKind.MANUAL_PAYMENT_REQUIRED, MANUAL_PAYMENT_REQUIRED,
                                 subscription_status=status, failure_count=ctx.payment_failure_count)

        try:
            gateway = self._gateway_factory(ctx.gateway, self.config)
        except ConfigurationError as e:
            logger.error("subscription %s: %s", ctx.subscription_id, e)
            self._release(ctx.subscription_id, expect.attempt_token)
            return ChargeOutcome(ctx.subscription_id, OutcomeKind.FAILED, str(e), subscription_status=ctx.status,
                                 failure_count=ctx.payment_failure_count)

        base = PaymentAttempt(amount=ctx.charge_amount, currency=ctx.currency, status=PaymentStatus.FAILED,
                              account_id=ctx.account_id, gateway=ctx.gateway, gateway_account_id=ctx.gateway_account_id)
        methods = ctx.payment_methods()
        if not methods:
            return self._record(ctx, dataclasses.replace(base, failure_reason=NO_PAYMENT_METHOD), expect, now, actor)
        if getattr(gateway, "requires_connected_account", False) and not (ctx.gateway_account_id and ctx.gateway_connected):
            return self._record(ctx, dataclasses.replace(base, failure_reason=ACCOUNT_NOT_CONNECTED), expect, now, actor)

        attempt = self._collect(gateway, ctx, methods, base)
        return self._record(ctx, attempt, expect, now, actor)

    def _collect(self, gateway: PaymentGateway, ctx: BillingContext,
                 methods: List[Tuple[PaymentMethodClass, str]], base: PaymentAttempt) -> PaymentAttempt:
        errors: List[Tuple[PaymentMethodClass, str]] = []
        declined_txn = None
        for method, payment_method_id in methods:
            request = ChargeRequest(
                account_ref=ctx.gateway_account_id,
                amount=ctx.charge_amount,
                currency=ctx.currency,
                method=method,
                payment_method_id=payment_method_id,
                idempotency_key=idempotency_key(ctx, method),
                description=f"Subscription payment for {ctx.plan_name or 'subscription'} plan",
                metadata={
                    "subscription_id": ctx.subscription_id,
                    "account_id": ctx.account_id,
                    "period_end": ctx.current_period_end.isoformat(),
                    "type": "subscription",
                },
            )
            result = self._call_gateway(gateway, request)
            if result.accepted:
                CHARGE_ATTEMPTS.labels(method=method.value, outcome="pending" if result.pending else "succeeded").inc()
                return dataclasses.replace(
                    base,
                    status=PaymentStatus.PENDING if result.pending else PaymentStatus.SUCCEEDED,
                    payment_method=method,
                    gateway_payment_id=result.transaction_id,
                    receipt_url=result.receipt_url,
                )
            CHARGE_ATTEMPTS.labels(method=method.value, outcome="failed").inc()
            logger.info("subscription %s: %s charge rejected: %s", ctx.subscription_id, method.value, result.error)
            errors.append((method, result.error or DEFAULT_FAILURE_REASON))
            declined_txn = result.transaction_id or declined_txn
            if result.outcome_unknown:
                logger.warning("subscription %s: %s outcome unknown, not trying further methods",
                               ctx.subscription_id, method.value)
                break

        if len(errors) == 1:
            reason = errors[0][1]
        else:
            reason = "; ".join(f"{m.value}: {err}" for m, err in errors)
        return dataclasses.replace(base, payment_method=errors[-1][0], gateway_payment_id=declined_txn,
                                   failure_reason=reason)

    def _call_gateway(self, gateway: PaymentGateway, request: ChargeRequest) -> ChargeResult:
        timeout = float(self.config.GATEWAY_TIMEOUT_SECONDS)
        future = self._executor.submit(gateway.charge, request)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            # a request still queued behind hung calls is never sent
            sent = not future.cancel()
            logger.error("gateway %s timed out after %.0fs key=%s sent=%s", gateway.name, timeout,
                         request.idempotency_key, sent)
            return ChargeResult.unavailable(method=request.method)
        except Exception:
            logger.exception("gateway %s raised key=%s", gateway.name, request.idempotency_key)
            return ChargeResult.unavailable(method=request.method)

    def _record(self, ctx: BillingContext, attempt: PaymentAttempt, expect: Expectation, now: datetime,
                actor: str) -> ChargeOutcome:
        res = self.ledger.record_outcome(ctx.subscription_id, attempt, expect, now, actor)
        kind = {
            PaymentStatus.SUCCEEDED: OutcomeKind.CHARGED,
            PaymentStatus.PENDING: OutcomeKind.PENDING,
            PaymentStatus.FAILED: OutcomeKind.FAILED,
        }[res.payment_status]
        reason = None
        if kind == OutcomeKind.FAILED:
            reason = attempt.failure_reason if attempt.status == PaymentStatus.FAILED else DEFAULT_FAILURE_REASON
        elif kind == OutcomeKind.PENDING:
            reason = "bank transfer processing"
        return ChargeOutcome(
            subscription_id=ctx.subscription_id,
            kind=kind,
            reason=reason,
            payment_id=res.payment_id,
            gateway_payment_id=res.gateway_payment_id,
            payment_method=attempt.payment_method.value if attempt.payment_method else None,
            subscription_status=res.subscription_status,
            failure_count=res.payment_failure_count,
        )

    def _release(self, subscription_id: str, token: Optional[str]):
        if token is None:
            return
        try:
            self.ledger.release_claim(subscription_id, token)
        except LedgerWriteError:
            # the claim lease expires on its own
            logger.exception("could not release claim on subscription %s", subscription_id)

    @staticmethod
    def _finish(outcome: ChargeOutcome) -> ChargeOutcome:
        CHARGE_OUTCOMES.labels(outcome=outcome.kind.value).inc()
        log = logger.info if outcome.kind in (OutcomeKind.CHARGED, OutcomeKind.PENDING, OutcomeKind.SKIPPED) else logger.warning
        log("charge outcome", extra={"subscription_id": outcome.subscription_id, "outcome": outcome.kind.value,
                                     "reason": outcome.reason, "gateway_payment_id": outcome.gateway_payment_id})
        return outcome
