import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

from conftest import JAN_1, FakeGateway, declined, processing, settled

from subbilling.gateways import GATEWAY_UNAVAILABLE, ChargeResult, create_gateway
from subbilling.models import PaymentMethodClass
from subbilling.orchestrator import (
    ACCOUNT_NOT_CONNECTED, NO_PAYMENT_METHOD, NOT_DUE, ChargeOrchestrator, OutcomeKind
)

RUN_AT = datetime(2024, 1, 1, 6, 0)


def test_successful_monthly_charge_advances_period(orchestrator, gateway, make_subscription, load, payments):
    gateway.queue(settled("pi_jan", receipt_url="https://pay.example/r/1"))
    sid = make_subscription()

    out = orchestrator.charge(sid, now=RUN_AT)

    assert out.kind == OutcomeKind.CHARGED and out.success
    sub = load(sid)
    assert sub.status == "active"
    assert sub.current_period_start == JAN_1
    assert sub.current_period_end == datetime(2024, 2, 1)
    assert sub.payment_failure_count == 0
    assert sub.last_payment_success_at == RUN_AT
    assert sub.last_gateway_payment_id == "pi_jan"
    assert sub.attempt_token is None

    [p] = payments(sid)
    assert p.status == "succeeded"
    assert p.amount == Decimal("29.00")
    assert p.gateway_payment_id == "pi_jan"
    assert p.receipt_url == "https://pay.example/r/1"
    assert p.paid_at == RUN_AT
    assert p.payment_method == "card"

    [req] = gateway.requests
    assert req.amount_minor == 2900
    assert req.account_ref == "acct_123"
    assert req.payment_method_id == "pm_card_visa"
    assert req.description == "Subscription payment for Pro plan"
    assert req.metadata["subscription_id"] == sid
    assert req.idempotency_key == f"sub-{sid}-20240101T000000-a0-card"


def test_not_due_is_skipped_without_gateway_call(orchestrator, gateway, make_subscription, payments):
    sid = make_subscription(current_period_end=datetime(2024, 1, 15))
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.SKIPPED
    assert out.reason == NOT_DUE
    assert gateway.requests == []
    assert payments(sid) == []


def test_explicit_charge_bypasses_due_check(orchestrator, make_subscription, load):
    sid = make_subscription(current_period_end=datetime(2024, 1, 15))
    out = orchestrator.charge(sid, manual=True, now=RUN_AT)
    assert out.kind == OutcomeKind.CHARGED
    assert load(sid).current_period_end == datetime(2024, 2, 15)


def test_canceled_subscription_is_skipped(orchestrator, gateway, make_subscription):
    sid = make_subscription(status="canceled")
    assert orchestrator.charge(sid, manual=True, now=RUN_AT).kind == OutcomeKind.SKIPPED
    assert gateway.requests == []


def test_unknown_subscription_fails(orchestrator):
    out = orchestrator.charge("missing", now=RUN_AT)
    assert out.kind == OutcomeKind.FAILED
    assert not out.success


def test_manual_gateway_marks_unpaid_without_payment(orchestrator, gateway, make_account, make_subscription,
                                                     load, payments):
    sid = make_subscription(account_id=make_account(gateway="manual"))
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.MANUAL_PAYMENT_REQUIRED
    assert out.reason == "Manual payment required"
    assert not out.success
    sub = load(sid)
    assert sub.status == "unpaid"
    assert sub.payment_failure_count == 0
    assert sub.attempt_token is None
    assert payments(sid) == []
    assert gateway.requests == []


def test_unset_gateway_is_manual(orchestrator, make_account, make_subscription, load):
    sid = make_subscription(account_id=make_account(gateway=None))
    assert orchestrator.charge(sid, now=RUN_AT).kind == OutcomeKind.MANUAL_PAYMENT_REQUIRED
    assert load(sid).status == "unpaid"


def test_no_payment_method_counts_as_failure(orchestrator, gateway, make_account, make_subscription, load, payments):
    sid = make_subscription(account_id=make_account(default_payment_method_id=None))
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.FAILED
    assert out.reason == NO_PAYMENT_METHOD
    sub = load(sid)
    assert sub.status == "past_due"
    assert sub.payment_failure_count == 1
    assert sub.next_retry_date == RUN_AT + timedelta(days=3)
    [p] = payments(sid)
    assert p.status == "failed"
    assert p.failure_reason == NO_PAYMENT_METHOD
    assert p.failure_count == 1
    assert gateway.requests == []


def test_unconnected_account_counts_as_failure(orchestrator, make_account, make_subscription, load):
    sid = make_subscription(account_id=make_account(gateway_account_id=None, gateway_connected=False))
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.reason == ACCOUNT_NOT_CONNECTED
    assert load(sid).payment_failure_count == 1


def test_unsupported_gateway_rejected_without_mutation(session_factory, ledger, config, make_account,
                                                       make_subscription, load, payments):
    orch = ChargeOrchestrator(session_factory, gateway_factory=create_gateway, ledger=ledger, config=config)
    sid = make_subscription(account_id=make_account(gateway="paypal"))
    out = orch.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.FAILED
    assert "paypal" in out.reason
    sub = load(sid)
    assert sub.status == "active"
    assert sub.payment_failure_count == 0
    assert sub.attempt_token is None
    assert payments(sid) == []


def test_bank_transfer_pending_holds_period(orchestrator, gateway, make_account, make_subscription, load, payments):
    gateway.queue(processing("pi_ach"))
    sid = make_subscription(account_id=make_account(bank_account_payment_method_id="pm_bank"))

    out = orchestrator.charge(sid, now=RUN_AT)

    assert out.kind == OutcomeKind.PENDING and out.success
    [req] = gateway.requests
    assert req.method == PaymentMethodClass.BANK_TRANSFER
    assert req.payment_method_id == "pm_bank"
    sub = load(sid)
    assert sub.settlement_pending
    assert sub.current_period_end == JAN_1
    assert sub.last_gateway_payment_id == "pi_ach"
    [p] = payments(sid)
    assert p.status == "pending"
    assert p.payment_method == "bank_transfer"

    # awaiting settlement: a second trigger does not charge again
    again = orchestrator.charge(sid, manual=True, now=RUN_AT + timedelta(hours=1))
    assert again.kind == OutcomeKind.SKIPPED
    assert len(gateway.requests) == 1


def test_bank_rejection_falls_back_to_card(orchestrator, gateway, make_account, make_subscription, load, payments):
    gateway.queue(declined("account closed"), settled("pi_card"))
    sid = make_subscription(account_id=make_account(bank_account_payment_method_id="pm_bank"))

    out = orchestrator.charge(sid, now=RUN_AT)

    assert out.kind == OutcomeKind.CHARGED
    assert out.payment_method == "card"
    assert [r.method for r in gateway.requests] == [PaymentMethodClass.BANK_TRANSFER, PaymentMethodClass.CARD]
    assert gateway.requests[0].idempotency_key != gateway.requests[1].idempotency_key
    assert load(sid).current_period_end == datetime(2024, 2, 1)
    assert [p.status for p in payments(sid)] == ["succeeded"]


def test_all_methods_rejected_reports_each_error(orchestrator, gateway, make_account, make_subscription, load):
    gateway.queue(declined("account closed"), declined("insufficient funds", txn="pi_declined"))
    sid = make_subscription(account_id=make_account(bank_account_payment_method_id="pm_bank"))

    out = orchestrator.charge(sid, now=RUN_AT)

    assert out.kind == OutcomeKind.FAILED
    assert out.reason == "bank_transfer: account closed; card: insufficient funds"
    assert out.gateway_payment_id == "pi_declined"
    sub = load(sid)
    assert sub.payment_failure_count == 1
    assert sub.last_payment_error == out.reason


def test_proration_amount_charged_and_cleared(orchestrator, gateway, make_subscription, load, payments):
    sid = make_subscription(proration_amount=Decimal("12.50"))
    orchestrator.charge(sid, now=RUN_AT)
    assert gateway.requests[0].amount_minor == 1250
    assert payments(sid)[0].amount == Decimal("12.50")
    assert load(sid).proration_amount is None


def test_gateway_exception_is_unavailable(orchestrator, gateway, make_subscription, load):
    def boom(req):
        raise RuntimeError("connection reset")
    gateway.queue(boom)
    sid = make_subscription()
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.reason == GATEWAY_UNAVAILABLE
    assert load(sid).payment_failure_count == 1


def test_gateway_timeout_is_unavailable(session_factory, ledger, config, make_subscription, load):
    config.GATEWAY_TIMEOUT_SECONDS = 0.2
    slow = FakeGateway(delay=1.0)
    orch = ChargeOrchestrator(session_factory, gateway_factory=lambda name, cfg: slow, ledger=ledger, config=config)
    sid = make_subscription()
    out = orch.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.FAILED
    assert out.reason == GATEWAY_UNAVAILABLE
    assert load(sid).status == "past_due"


def test_timeout_ends_attempt_without_card_fallback(session_factory, ledger, config, make_account,
                                                    make_subscription, load):
    config.GATEWAY_TIMEOUT_SECONDS = 0.2
    slow = FakeGateway(delay=0.6)
    orch = ChargeOrchestrator(session_factory, gateway_factory=lambda name, cfg: slow, ledger=ledger, config=config)
    sid = make_subscription(account_id=make_account(bank_account_payment_method_id="pm_bank"))

    out = orch.charge(sid, now=RUN_AT)

    assert out.kind == OutcomeKind.FAILED
    assert out.reason == GATEWAY_UNAVAILABLE
    assert [r.method for r in slow.requests] == [PaymentMethodClass.BANK_TRANSFER]
    time.sleep(0.8)
    assert len(slow.requests) == 1
    sub = load(sid)
    assert sub.status == "past_due"
    assert sub.payment_failure_count == 1


def test_timed_out_request_still_queued_is_never_sent(session_factory, gateway, ledger, config, make_subscription):
    config.GATEWAY_TIMEOUT_SECONDS = 0.2
    busy = ThreadPoolExecutor(max_workers=1)
    release = threading.Event()
    busy.submit(release.wait)
    orch = ChargeOrchestrator(session_factory, gateway_factory=lambda name, cfg: gateway, ledger=ledger,
                              config=config, executor=busy)
    sid = make_subscription()

    out = orch.charge(sid, now=RUN_AT)

    release.set()
    busy.shutdown(wait=True)
    assert out.reason == GATEWAY_UNAVAILABLE
    assert gateway.requests == []


def test_transport_error_does_not_fall_back_to_card(orchestrator, gateway, make_account, make_subscription, load):
    gateway.queue(lambda req: ChargeResult.unavailable(method=req.method))
    sid = make_subscription(account_id=make_account(bank_account_payment_method_id="pm_bank"))

    out = orchestrator.charge(sid, now=RUN_AT)

    assert out.reason == GATEWAY_UNAVAILABLE
    assert [r.method for r in gateway.requests] == [PaymentMethodClass.BANK_TRANSFER]
    assert load(sid).payment_failure_count == 1


def test_orchestrators_share_one_gateway_pool(session_factory, ledger, config):
    first = ChargeOrchestrator(session_factory, ledger=ledger, config=config)
    second = ChargeOrchestrator(session_factory, ledger=ledger, config=config)
    assert first._executor is second._executor


def test_retry_uses_new_idempotency_key(orchestrator, gateway, make_subscription):
    gateway.queue(declined(), settled("pi_retry"))
    sid = make_subscription()
    orchestrator.charge(sid, now=RUN_AT)
    orchestrator.charge(sid, manual=True, now=RUN_AT + timedelta(days=3))
    keys = [r.idempotency_key for r in gateway.requests]
    assert keys[0].endswith("-a0-card")
    assert keys[1].endswith("-a1-card")


def test_repeat_trigger_after_success_is_noop(orchestrator, gateway, make_subscription, payments):
    sid = make_subscription()
    orchestrator.charge(sid, now=RUN_AT)
    out = orchestrator.charge(sid, now=RUN_AT)
    assert out.kind == OutcomeKind.SKIPPED
    assert len(gateway.requests) == 1
    assert len(payments(sid)) == 1


def test_concurrent_triggers_charge_once(session_factory, ledger, config, make_subscription, load, payments):
    slow = FakeGateway(delay=0.3)
    orch = ChargeOrchestrator(session_factory, gateway_factory=lambda name, cfg: slow, ledger=ledger, config=config)
    sid = make_subscription()
    outcomes = []
    start = threading.Barrier(3)

    def trigger():
        start.wait()
        outcomes.append(orch.charge(sid, manual=True, now=RUN_AT))

    threads = [threading.Thread(target=trigger) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(slow.requests) == 1
    assert sorted(o.kind.value for o in outcomes) == ["charged", "skipped", "skipped"]
    assert len(payments(sid)) == 1
    assert load(sid).current_period_end == datetime(2024, 2, 1)


def test_same_gateway_payment_id_keeps_one_row_with_latest_status(orchestrator, gateway, make_subscription,
                                                                   load, payments):
    gateway.queue(declined("insufficient funds", txn="pi_x"), settled("pi_x"))
    sid = make_subscription()

    first = orchestrator.charge(sid, now=RUN_AT)
    assert first.kind == OutcomeKind.FAILED
    assert [(p.gateway_payment_id, p.status) for p in payments(sid)] == [("pi_x", "failed")]

    second = orchestrator.charge(sid, manual=True, now=RUN_AT + timedelta(hours=1))

    assert second.kind == OutcomeKind.CHARGED
    assert [(p.gateway_payment_id, p.status) for p in payments(sid)] == [("pi_x", "succeeded")]
    sub = load(sid)
    assert sub.payment_failure_count == 0
    assert sub.status == "active"
