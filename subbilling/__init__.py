"""
Recurring subscription billing engine.

Finds subscriptions due for payment, charges them through the account's
payment gateway (bank transfer first, card as fallback), applies the dunning
policy on failure and reconciles asynchronous gateway webhooks into the same
ledger.
"""
__version__ = "0.1.0"
