from .abstract import (
    ChargeRequest, ChargeResult, PaymentGateway, GATEWAY_UNAVAILABLE, from_minor_units, to_minor_units
)
from .factory import create_gateway

__all__ = [
    "ChargeRequest",
    "ChargeResult",
    "PaymentGateway",
    "GATEWAY_UNAVAILABLE",
    "from_minor_units",
    "to_minor_units",
    "create_gateway",
]
