"""
Billing scheduler: selects subscriptions that need charging and fans them out
to the charge orchestrator.

Selection for an untargeted run is the union of
  - due subscriptions: active, not canceling, period ended, not awaiting settlement
  - retry candidates: past due, retry date reached, grace window open, under the failure limit
deduplicated by id. A run targeted at one subscription charges it explicitly
(due-date guard bypassed); a run targeted at an account takes every
active, non-canceling subscription of that account and reports the ones not
yet due as skipped.

One subscription's failure never aborts the run; concurrency across
subscriptions is bounded by SCHEDULER_MAX_WORKERS.
"""
import contextvars
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from subbilling.audit import record_audit
from subbilling.config import Config, cfg
from subbilling.db import session_scope
from subbilling.errors import SubscriptionNotFound
from subbilling.logging_config import request_id_ctx
from subbilling.metrics import BILLING_RUN_SECONDS
from subbilling.models import Subscription, SubscriptionStatus
from subbilling.orchestrator import ChargeOrchestrator, ChargeOutcome, OutcomeKind
from subbilling.policy import DunningPolicy
from subbilling.timeutil import utcnow

logger = logging.getLogger("subbilling.scheduler")


@dataclass(frozen=True)
class CallerContext:
    """Who triggered a run: the periodic scheduler or an authenticated operator."""
    kind: str
    actor: str

    @classmethod
    def scheduler(cls) -> "CallerContext":
        return cls(kind="scheduler", actor="scheduler")

    @classmethod
    def operator(cls, subject: str) -> "CallerContext":
        return cls(kind="operator", actor=f"operator:{subject}")


@dataclass(frozen=True)
class BillingTarget:
    subscription_id: Optional[str] = None
    account_id: Optional[str] = None


@dataclass
class BillingRunSummary:
    run_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[ChargeOutcome] = field(default_factory=list)

    def add(self, outcome: ChargeOutcome):
        self.results.append(outcome)
        self.processed += 1
        if outcome.kind == OutcomeKind.SKIPPED:
            self.skipped += 1
        elif outcome.success:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


class BillingScheduler:
    def __init__(self, orchestrator: Optional[ChargeOrchestrator] = None, session_factory=None,
                 policy: Optional[DunningPolicy] = None, config: Optional[Config] = None,
                 max_workers: Optional[int] = None, clock=utcnow):
        self.config = config or cfg
        self._session_factory = session_factory
        self.orchestrator = orchestrator or ChargeOrchestrator(session_factory, config=self.config)
        self.policy = policy or DunningPolicy.from_config(self.config)
        self.max_workers = int(max_workers if max_workers is not None else self.config.SCHEDULER_MAX_WORKERS)
        self.clock = clock

    # ----- selection -------------------------------------------------------------

    def select_due(self, now: datetime) -> List[str]:
        with session_scope(self._session_factory) as session:
            q = session.query(Subscription.id).filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end <= now,
                Subscription.settlement_pending.is_(False),
            )
            return [row[0] for row in q.order_by(Subscription.current_period_end, Subscription.id)]

    def select_for_account(self, account_id: str) -> List[str]:
        """Every active, non-canceling subscription of the account; the orchestrator skips the ones not due."""
        with session_scope(self._session_factory) as session:
            q = session.query(Subscription.id).filter(
                Subscription.account_id == account_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.cancel_at_period_end.is_(False),
            )
            return [row[0] for row in q.order_by(Subscription.current_period_end, Subscription.id)]

    def select_retry_candidates(self, now: datetime) -> List[str]:
        with session_scope(self._session_factory) as session:
            q = session.query(Subscription).filter(
                Subscription.status == SubscriptionStatus.PAST_DUE.value,
                Subscription.next_retry_date <= now,
                Subscription.grace_period_end >= now,
                Subscription.payment_failure_count < self.policy.max_failures,
                Subscription.settlement_pending.is_(False),
            ).order_by(Subscription.next_retry_date, Subscription.id)
            return [s.id for s in q if self.policy.is_retry_eligible(
                s.status, s.payment_failure_count, s.next_retry_date, s.grace_period_end, now)]

    def _plan(self, target: BillingTarget, now: datetime) -> List[Tuple[str, bool]]:
        """(subscription id, explicit) pairs in charge order, each id once."""
        if target.subscription_id:
            with session_scope(self._session_factory) as session:
                if session.get(Subscription, target.subscription_id) is None:
                    raise SubscriptionNotFound(f"subscription {target.subscription_id} not found")
            return [(target.subscription_id, True)]
        if target.account_id:
            return [(sid, False) for sid in self.select_for_account(target.account_id)]

        plan: List[Tuple[str, bool]] = []
        seen = set()
        for sid in self.select_due(now):
            seen.add(sid)
            plan.append((sid, False))
        for sid in self.select_retry_candidates(now):
            if sid not in seen:
                seen.add(sid)
                # retries are not due by period end; the retry date made them eligible
                plan.append((sid, True))
        return plan

    # ----- run -------------------------------------------------------------------

    def run(self, target: Optional[BillingTarget] = None, caller: Optional[CallerContext] = None,
            now: Optional[datetime] = None) -> BillingRunSummary:
        target = target or BillingTarget()
        caller = caller or CallerContext.scheduler()
        now = now or self.clock()
        summary = BillingRunSummary(run_id=uuid.uuid4().hex)
        token = request_id_ctx.set(summary.run_id)
        started = time.monotonic()
        try:
            plan = self._plan(target, now)
            logger.info("billing run started", extra={"caller": caller.actor, "candidates": len(plan),
                                                       "subscription_id": target.subscription_id,
                                                       "account_id": target.account_id})
            for outcome in self._execute(plan, caller, now):
                summary.add(outcome)
            self._record_run(summary, caller, target)
            logger.info("billing run finished", extra={"processed": summary.processed, "succeeded": summary.succeeded,
                                                        "failed": summary.failed, "skipped": summary.skipped})
            return summary
        finally:
            BILLING_RUN_SECONDS.observe(time.monotonic() - started)
            request_id_ctx.reset(token)

    def _execute(self, plan: List[Tuple[str, bool]], caller: CallerContext, now: datetime) -> List[ChargeOutcome]:
        if self.max_workers <= 1 or len(plan) <= 1:
            return [self._charge_one(sid, explicit, caller, now) for sid, explicit in plan]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="subbilling-run") as pool:
            futures = [pool.submit(contextvars.copy_context().run, self._charge_one, sid, explicit, caller, now)
                       for sid, explicit in plan]
            return [f.result() for f in futures]

    def _charge_one(self, subscription_id: str, explicit: bool, caller: CallerContext,
                    now: datetime) -> ChargeOutcome:
        try:
            return self.orchestrator.charge(subscription_id, manual=explicit, now=now, actor=caller.actor)
        except Exception as e:
            logger.exception("charge of subscription %s raised", subscription_id)
            return ChargeOutcome(subscription_id, OutcomeKind.FAILED, str(e) or e.__class__.__name__)

    def _record_run(self, summary: BillingRunSummary, caller: CallerContext, target: BillingTarget):
        with session_scope(self._session_factory) as session:
            record_audit(session, "billing.run_completed", caller.actor, "billing_run", summary.run_id, {
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "subscription_id": target.subscription_id,
                "account_id": target.account_id,
            })
