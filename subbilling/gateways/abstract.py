#!/usr/bin/env python3
"""
Payment gateway abstraction.

The orchestrator and reconciler talk to processors only through the
PaymentGateway interface; implementations (Stripe today, a mock for
development) live next to this module and are picked by gateways.factory.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

from subbilling.models import PaymentMethodClass

GATEWAY_UNAVAILABLE = "gateway unavailable"

# ISO currencies charged in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    amount = Decimal(amount)
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(int(amount))
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class ChargeRequest:
    account_ref: Optional[str]  # connected account at the processor
    amount: Decimal
    currency: str
    method: PaymentMethodClass
    payment_method_id: str
    idempotency_key: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.amount, self.currency)


@dataclass(frozen=True)
class ChargeResult:
    """
    Three outcomes:
      accepted and settled       -> money collected
      accepted and not settled   -> bank transfer in flight, resolved by webhook
      not accepted               -> rejected, error carries a human-readable reason
    """
    accepted: bool
    transaction_id: Optional[str] = None
    settled: bool = False
    error: Optional[str] = None
    method: Optional[PaymentMethodClass] = None
    receipt_url: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.accepted and not self.settled

    @property
    def outcome_unknown(self) -> bool:
        """Timeout or transport failure: the processor may or may not have taken the payment."""
        return not self.accepted and self.error == GATEWAY_UNAVAILABLE

    @classmethod
    def rejected(cls, reason: str, method: Optional[PaymentMethodClass] = None,
                 transaction_id: Optional[str] = None) -> "ChargeResult":
        return cls(accepted=False, transaction_id=transaction_id, error=reason, method=method)

    @classmethod
    def unavailable(cls, method: Optional[PaymentMethodClass] = None) -> "ChargeResult":
        return cls.rejected(GATEWAY_UNAVAILABLE, method=method)


class PaymentGateway(Protocol):
    """
    Minimal gateway interface.
    - charge(request) -> ChargeResult; never raises for processor or transport errors
    - verify_webhook(payload, signature) -> parsed event dict; raises WebhookVerificationError
    """
    name: str

    def charge(self, request: ChargeRequest) -> ChargeResult:
        ...

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        ...
