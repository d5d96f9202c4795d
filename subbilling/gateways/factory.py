#!/usr/bin/env python3
"""
Gateway factory.
Creates a PaymentGateway implementation from an account's gateway tag.
Supported tags: "stripe", "mock".
"""
from __future__ import annotations

import logging
from typing import Optional

from subbilling.config import Config, cfg
from subbilling.errors import ConfigurationError

from .abstract import PaymentGateway

logger = logging.getLogger("subbilling.gateways")


def create_gateway(name: Optional[str], config: Optional[Config] = None) -> PaymentGateway:
    config = config or cfg
    typ = (name or "").lower()
    if typ == "stripe":
        if config.STRIPE_API_KEY:
            from .stripe_adapter import StripeGateway
            return StripeGateway(api_key=config.STRIPE_API_KEY, webhook_secret=config.STRIPE_WEBHOOK_SECRET,
                                 max_network_retries=config.GATEWAY_MAX_NETWORK_RETRIES)
        if config.ENV == "production":
            raise ConfigurationError("STRIPE_API_KEY is not configured")
        logger.info("Using mock payment gateway (STRIPE_API_KEY not configured)")
        from .mock_adapter import MockGateway
        return MockGateway()
    if typ == "mock":
        from .mock_adapter import MockGateway
        return MockGateway()
    raise ConfigurationError(f"Gateway {name!r} not supported")
