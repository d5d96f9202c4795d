import functools

from sqlalchemy.exc import SQLAlchemyError


class BillingError(Exception):
    pass


class ConfigurationError(BillingError):
    """Gateway unknown or missing credentials."""


class LedgerWriteError(BillingError):
    pass


class ConcurrentTransitionError(BillingError):
    """A guarded write matched no row: another trigger already moved the subscription."""


class WebhookVerificationError(BillingError):
    pass


class SubscriptionNotFound(BillingError):
    pass


def wrap_ledger_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as e:
            raise LedgerWriteError(str(e)) from e
    return wrapper
