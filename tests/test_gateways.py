import json
from decimal import Decimal

import pytest
import stripe

from subbilling.config import Config
from subbilling.errors import ConfigurationError, WebhookVerificationError
from subbilling.gateways import ChargeRequest, create_gateway, from_minor_units, to_minor_units
from subbilling.gateways.abstract import GATEWAY_UNAVAILABLE
from subbilling.gateways.mock_adapter import MockGateway
from subbilling.gateways.stripe_adapter import StripeGateway
from subbilling.models import PaymentMethodClass


def _request(method=PaymentMethodClass.CARD, amount="29.00"):
    return ChargeRequest(account_ref="acct_123", amount=Decimal(amount), currency="usd", method=method,
                         payment_method_id="pm_1", idempotency_key="sub-1-20240101T000000-a0-card",
                         description="Subscription payment for Pro plan", metadata={"subscription_id": "1"})


def test_minor_units():
    assert to_minor_units(Decimal("29.00"), "usd") == 2900
    assert to_minor_units(Decimal("10.005"), "usd") == 1001
    assert to_minor_units(Decimal("500"), "JPY") == 500
    assert from_minor_units(2900, "usd") == Decimal("29.00")
    assert from_minor_units(500, "jpy") == Decimal(500)


def test_factory_falls_back_to_mock_outside_production():
    assert isinstance(create_gateway("stripe", Config(ENV="development", STRIPE_API_KEY=None)), MockGateway)
    assert isinstance(create_gateway("mock", Config()), MockGateway)


def test_factory_requires_key_in_production():
    with pytest.raises(ConfigurationError):
        create_gateway("stripe", Config(ENV="production", STRIPE_API_KEY=None))


def test_factory_names_unsupported_gateway():
    with pytest.raises(ConfigurationError, match="paypal"):
        create_gateway("paypal", Config())


def test_factory_builds_stripe_gateway():
    gw = create_gateway("stripe", Config(STRIPE_API_KEY="sk_test_123", STRIPE_WEBHOOK_SECRET="whsec_1"))
    assert isinstance(gw, StripeGateway)
    assert gw.webhook_secret == "whsec_1"


def test_mock_gateway_is_deterministic():
    gw = MockGateway()
    first = gw.charge(_request())
    assert first.accepted and first.settled
    assert gw.charge(_request()).transaction_id == first.transaction_id


def _fake_create(result=None, exc=None, calls=None):
    def create(**params):
        if calls is not None:
            calls.append(params)
        if exc is not None:
            raise exc
        return result
    return create


def test_stripe_card_success(monkeypatch):
    calls = []
    intent = {"id": "pi_1", "status": "succeeded", "latest_charge": {"receipt_url": "https://pay.example/r/1"}}
    monkeypatch.setattr(stripe.PaymentIntent, "create", _fake_create(intent, calls=calls))

    res = StripeGateway("sk_test").charge(_request())

    assert res.accepted and res.settled
    assert res.transaction_id == "pi_1"
    assert res.receipt_url == "https://pay.example/r/1"
    [params] = calls
    assert params["amount"] == 2900
    assert params["stripe_account"] == "acct_123"
    assert params["idempotency_key"] == "sub-1-20240101T000000-a0-card"
    assert params["payment_method_types"] == ["card"]
    assert params["off_session"] is True


def test_stripe_bank_processing_is_pending(monkeypatch):
    calls = []
    monkeypatch.setattr(stripe.PaymentIntent, "create",
                        _fake_create({"id": "pi_ach", "status": "processing"}, calls=calls))
    res = StripeGateway("sk_test").charge(_request(PaymentMethodClass.BANK_TRANSFER))
    assert res.pending
    assert res.transaction_id == "pi_ach"
    assert calls[0]["payment_method_types"] == ["us_bank_account"]
    assert "off_session" not in calls[0]


def test_stripe_card_requires_action_is_rejected(monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create",
                        _fake_create({"id": "pi_3ds", "status": "requires_action"}))
    res = StripeGateway("sk_test").charge(_request())
    assert not res.accepted
    assert res.error == "Payment status: requires_action"
    assert res.transaction_id == "pi_3ds"


def test_stripe_decline(monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create",
                        _fake_create(exc=stripe.CardError("Your card was declined.", None, "card_declined")))
    res = StripeGateway("sk_test").charge(_request())
    assert not res.accepted
    assert res.error == "Your card was declined."


def test_stripe_connection_error_is_unavailable(monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", _fake_create(exc=stripe.APIConnectionError("reset")))
    res = StripeGateway("sk_test").charge(_request())
    assert not res.accepted
    assert res.error == GATEWAY_UNAVAILABLE


def test_stripe_webhook_signature_checked(monkeypatch):
    def bad_header(payload, header, secret, tolerance=None):
        raise stripe.SignatureVerificationError("no signatures found", header)
    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", bad_header)
    with pytest.raises(WebhookVerificationError):
        StripeGateway("sk_test", webhook_secret="whsec_1").verify_webhook(b"{}", "t=1,v1=bad")


def test_stripe_webhook_parses_verified_payload(monkeypatch):
    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", lambda *a, **kw: True)
    body = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode()
    event = StripeGateway("sk_test", webhook_secret="whsec_1").verify_webhook(body, "t=1,v1=ok")
    assert event["id"] == "evt_1"
