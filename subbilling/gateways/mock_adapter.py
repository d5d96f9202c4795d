"""
Development gateway used when no processor credentials are configured.
Every charge settles immediately; transaction ids are derived from the
idempotency key so repeating an attempt returns the same id.
"""
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from subbilling.errors import WebhookVerificationError
from subbilling.gateways.abstract import ChargeRequest, ChargeResult

logger = logging.getLogger("subbilling.gateways.mock")


class MockGateway:
    name = "mock"

    def charge(self, request: ChargeRequest) -> ChargeResult:
        txn = "mock_" + hashlib.sha1(request.idempotency_key.encode("utf-8")).hexdigest()[:20]
        logger.info("Mock charge of %d %s via %s (key=%s)", request.amount_minor, request.currency,
                    request.method.value, request.idempotency_key)
        return ChargeResult(accepted=True, transaction_id=txn, settled=True, method=request.method)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        try:
            return json.loads(payload.decode("utf-8") if isinstance(payload, bytes) else payload)
        except ValueError as e:
            raise WebhookVerificationError("webhook payload is not JSON") from e
