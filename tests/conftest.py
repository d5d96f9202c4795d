# tests/conftest.py
"""
Shared fixtures: a SQLite file DB per test, a scripted fake gateway and the
billing components wired to both.
"""
import json
import threading
import time
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from subbilling.config import Config
from subbilling.db import Base, _make_engine, session_scope
from subbilling.gateways import ChargeResult
from subbilling.ledger import LedgerWriter
from subbilling.models import BillingAccount, Payment, Subscription
from subbilling.orchestrator import ChargeOrchestrator
from subbilling.reconciler import WebhookReconciler
from subbilling.scheduler import BillingScheduler

JAN_1 = datetime(2024, 1, 1)
DEC_1 = datetime(2023, 12, 1)


class FakeGateway:
    """
    Scripted PaymentGateway. Queued results are returned in order (callables
    are invoked with the request); once the queue is empty every charge settles.
    """
    name = "stripe"
    requires_connected_account = True

    def __init__(self, *results, delay: float = 0.0):
        self.results = list(results)
        self.requests = []
        self.delay = delay
        self._lock = threading.Lock()

    def queue(self, *results):
        self.results.extend(results)

    def charge(self, request):
        with self._lock:
            self.requests.append(request)
            res = self.results.pop(0) if self.results else None
            n = len(self.requests)
        if self.delay:
            time.sleep(self.delay)
        if callable(res):
            res = res(request)
        if res is None:
            res = ChargeResult(accepted=True, transaction_id=f"pi_{n}", settled=True, method=request.method)
        return res

    def verify_webhook(self, payload, signature):
        return json.loads(payload)


def settled(txn, receipt_url=None):
    return lambda req: ChargeResult(accepted=True, transaction_id=txn, settled=True, method=req.method,
                                    receipt_url=receipt_url)


def processing(txn):
    return lambda req: ChargeResult(accepted=True, transaction_id=txn, settled=False, method=req.method)


def declined(reason="Your card was declined.", txn=None):
    return lambda req: ChargeResult.rejected(reason, method=req.method, transaction_id=txn)


@pytest.fixture
def config():
    return Config(
        ENV="test",
        DATABASE_URL="sqlite://",
        STRIPE_API_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        GATEWAY_TIMEOUT_SECONDS=5,
        SCHEDULER_SECRET="test-scheduler-secret",
        JWT_SECRET_KEY="test-secret-key",
        OPERATOR_SCOPES=["admin", "billing:operator"],
        SCHEDULER_MAX_WORKERS=1,
        ATTEMPT_LEASE_SECONDS=900,
        MAX_PAYMENT_FAILURES=3,
        GRACE_PERIOD_DAYS=7,
        RETRY_INTERVAL_DAYS=3,
    )


@pytest.fixture
def session_factory(tmp_path):
    # file DB so threaded tests share state through real connections
    engine = _make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(session_factory, config):
    return LedgerWriter(session_factory, config=config)


@pytest.fixture
def orchestrator(session_factory, gateway, ledger, config):
    return ChargeOrchestrator(session_factory, gateway_factory=lambda name, cfg: gateway, ledger=ledger,
                              config=config)


@pytest.fixture
def scheduler(session_factory, orchestrator, config):
    return BillingScheduler(orchestrator, session_factory, config=config)


@pytest.fixture
def reconciler(session_factory, ledger, config):
    return WebhookReconciler(session_factory, ledger=ledger, config=config)


@pytest.fixture
def make_account(session_factory):
    def _make(**kw):
        values = dict(name="Acme", gateway="stripe", gateway_account_id="acct_123", gateway_connected=True,
                      default_payment_method_id="pm_card_visa")
        values.update(kw)
        with session_scope(session_factory) as s:
            acct = BillingAccount(**values)
            s.add(acct)
            s.flush()
            return acct.id
    return _make


@pytest.fixture
def make_subscription(session_factory, make_account):
    def _make(account_id=None, **kw):
        values = dict(plan_name="Pro", amount=Decimal("29.00"), currency="usd", billing_cycle="monthly",
                      status="active", current_period_start=DEC_1, current_period_end=JAN_1)
        values.update(kw)
        with session_scope(session_factory) as s:
            sub = Subscription(account_id=account_id or make_account(), **values)
            s.add(sub)
            s.flush()
            return sub.id
    return _make


@pytest.fixture
def load(session_factory):
    def _load(subscription_id):
        with session_scope(session_factory) as s:
            return s.get(Subscription, subscription_id)
    return _load


@pytest.fixture
def payments(session_factory):
    def _payments(subscription_id):
        with session_scope(session_factory) as s:
            return s.query(Payment).filter_by(subscription_id=subscription_id).order_by(Payment.id).all()
    return _payments
