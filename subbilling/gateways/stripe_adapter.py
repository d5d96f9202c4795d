"""
Stripe implementation of PaymentGateway.

Charges are PaymentIntents created and confirmed in one call against the
account's connected Stripe account (Stripe-Account header). Every call
carries the caller's idempotency key, so the SDK's own network retries
(max_network_retries) never create a second intent for the same attempt.
"""
import json
import logging
from typing import Any, Dict, Optional

import stripe

from subbilling.errors import WebhookVerificationError
from subbilling.gateways.abstract import ChargeRequest, ChargeResult
from subbilling.models import PaymentMethodClass

logger = logging.getLogger("subbilling.gateways.stripe")

_STRIPE_METHOD_TYPES = {
    PaymentMethodClass.BANK_TRANSFER: "us_bank_account",
    PaymentMethodClass.CARD: "card",
}


def _receipt_url(intent: Dict[str, Any]) -> Optional[str]:
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge.get("receipt_url")
    return None


def _declined_intent_id(exc: stripe.StripeError) -> Optional[str]:
    err = getattr(exc, "error", None)
    intent = getattr(err, "payment_intent", None) if err is not None else None
    if isinstance(intent, dict):
        return intent.get("id")
    return None


class StripeGateway:
    name = "stripe"
    requires_connected_account = True

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None, max_network_retries: int = 2):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.max_network_retries = max_network_retries

    def charge(self, request: ChargeRequest) -> ChargeResult:
        method = request.method
        params: Dict[str, Any] = dict(
            api_key=self.api_key,
            amount=request.amount_minor,
            currency=request.currency.lower(),
            payment_method=request.payment_method_id,
            payment_method_types=[_STRIPE_METHOD_TYPES[method]],
            confirm=True,
            description=request.description,
            metadata=request.metadata,
            expand=["latest_charge"],
            idempotency_key=request.idempotency_key,
        )
        if request.account_ref:
            params["stripe_account"] = request.account_ref
        if method == PaymentMethodClass.CARD:
            params["off_session"] = True
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as ce:
            logger.warning("charge declined key=%s: %s", request.idempotency_key, ce.user_message or ce)
            return ChargeResult.rejected(ce.user_message or str(ce), method=method,
                                         transaction_id=_declined_intent_id(ce))
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError):
            logger.exception("stripe unavailable key=%s", request.idempotency_key)
            return ChargeResult.unavailable(method=method)
        except stripe.StripeError as se:
            logger.warning("stripe rejected charge key=%s: %s", request.idempotency_key, se)
            return ChargeResult.rejected(getattr(se, "user_message", None) or str(se), method=method)

        status = intent.get("status")
        intent_id = intent.get("id")
        if status == "succeeded":
            return ChargeResult(accepted=True, transaction_id=intent_id, settled=True, method=method,
                                receipt_url=_receipt_url(intent))
        if status == "processing" and method == PaymentMethodClass.BANK_TRANSFER:
            # bank debits settle in 3-5 business days; the webhook finalizes them
            return ChargeResult(accepted=True, transaction_id=intent_id, settled=False, method=method)
        return ChargeResult.rejected(f"Payment status: {status}", method=method, transaction_id=intent_id)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        if self.webhook_secret:
            try:
                stripe.WebhookSignature.verify_header(text, signature or "", self.webhook_secret)
            except stripe.SignatureVerificationError as e:
                raise WebhookVerificationError("invalid webhook signature") from e
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")
        try:
            return json.loads(text)
        except ValueError as e:
            raise WebhookVerificationError("webhook payload is not JSON") from e
