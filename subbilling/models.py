"""
Canonical datastore models for the billing engine (SQLAlchemy ORM)
- BillingAccount (account payment configuration), Subscription, Payment, AuditLog

Subscription rows are mutated only through guarded UPDATEs issued by the
ledger (see subbilling.ledger); Payment rows are never deleted.
"""
import uuid
from enum import Enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON, Numeric, String, Text
)
from sqlalchemy.orm import relationship

from subbilling.db import Base
from subbilling.timeutil import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentMethodClass(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"


MANUAL_GATEWAY = "manual"


class BillingAccount(Base):
    __tablename__ = "billing_accounts"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=True)
    gateway = Column(String(50), nullable=True)  # None / "manual" / "stripe"
    gateway_account_id = Column(String(200), nullable=True)  # e.g. stripe connected account id
    gateway_connected = Column(Boolean, default=False, nullable=False)
    default_payment_method_id = Column(String(200), nullable=True)  # card
    bank_account_payment_method_id = Column(String(200), nullable=True)  # us_bank_account
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subscriptions = relationship("Subscription", back_populates="account")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(64), primary_key=True, default=_new_id)
    account_id = Column(String(64), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_name = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)
    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    # dunning state
    payment_failure_count = Column(Integer, default=0, nullable=False)
    grace_period_end = Column(DateTime, nullable=True)
    next_retry_date = Column(DateTime, nullable=True)
    last_payment_error = Column(Text, nullable=True)

    # pending plan-change adjustment; supersedes amount until a charge succeeds
    proration_amount = Column(Numeric(12, 2), nullable=True)

    last_payment_attempt_at = Column(DateTime, nullable=True)
    last_payment_success_at = Column(DateTime, nullable=True)
    last_gateway_payment_id = Column(String(255), nullable=True, index=True)
    settlement_pending = Column(Boolean, default=False, nullable=False)

    # single-flight claim
    attempt_token = Column(String(64), nullable=True)
    attempt_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("BillingAccount", back_populates="subscriptions")
    payments = relationship("Payment", back_populates="subscription")

    __table_args__ = (
        CheckConstraint("payment_failure_count >= 0", name="ck_subscriptions_failure_count"),
        Index("ix_subscriptions_retry", "status", "next_retry_date"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(64), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(String(64), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    gateway = Column(String(50), nullable=True)
    gateway_account_id = Column(String(200), nullable=True)
    gateway_payment_id = Column(String(255), nullable=True, unique=True)  # reconciliation key
    status = Column(String(20), nullable=False)
    payment_method = Column(String(20), nullable=True)
    payment_type = Column(String(50), nullable=False, default="subscription")
    failure_reason = Column(Text, nullable=True)
    failure_count = Column(Integer, nullable=True)
    receipt_url = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    actor = Column(String(200), nullable=False)
    target_type = Column(String(50), nullable=False)
    target_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
