"""
FastAPI router for billing endpoints.
Endpoints:
 - POST /v1/billing/run      -> run billing (scheduler secret or operator JWT)
 - POST /v1/billing/webhook  -> payment gateway webhook (unauthenticated, verifies gateway signature)

Callers of /run authenticate with either
 - X-Scheduler-Secret: <SCHEDULER_SECRET>        (periodic trigger)
 - Authorization: Bearer <JWT with an operator scope>
"""
import hmac
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from subbilling.config import Config, cfg
from subbilling.errors import ConfigurationError, SubscriptionNotFound, WebhookVerificationError
from subbilling.gateways import PaymentGateway, create_gateway
from subbilling.reconciler import WebhookReconciler
from subbilling.scheduler import BillingScheduler, BillingTarget, CallerContext

logger = logging.getLogger("subbilling.api")

router = APIRouter(prefix="/v1/billing", tags=["billing"])

bearer_scheme = HTTPBearer(auto_error=False)


class BillingRunRequest(BaseModel):
    subscription_id: Optional[str] = None
    account_id: Optional[str] = None


# ----- dependencies (overridden in tests) -------------------------------------

def get_config() -> Config:
    return cfg


@lru_cache()
def get_scheduler() -> BillingScheduler:
    return BillingScheduler()


@lru_cache()
def get_reconciler() -> WebhookReconciler:
    return WebhookReconciler()


def get_webhook_gateway(config: Config = Depends(get_config)) -> PaymentGateway:
    try:
        return create_gateway("stripe", config)
    except ConfigurationError as e:
        logger.error("webhook gateway unavailable: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e


def get_caller_context(request: Request,
                       credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
                       config: Config = Depends(get_config)) -> CallerContext:
    secret = request.headers.get("X-Scheduler-Secret")
    if secret is not None:
        if config.SCHEDULER_SECRET and hmac.compare_digest(secret, config.SCHEDULER_SECRET):
            return CallerContext.scheduler()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid scheduler secret")
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required",
                            headers={"WWW-Authenticate": "Bearer"})
    try:
        payload = jwt.decode(credentials.credentials, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    scopes = payload.get("scopes") or []
    if isinstance(scopes, str):
        scopes = scopes.split()
    if not set(scopes) & set(config.OPERATOR_SCOPES):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="operator scope required")
    return CallerContext.operator(payload.get("sub") or "unknown")


# ----- endpoints ----------------------------------------------------------------

@router.post("/run")
def run_billing(body: Optional[BillingRunRequest] = None,
                caller: CallerContext = Depends(get_caller_context),
                scheduler: BillingScheduler = Depends(get_scheduler)):
    """
    Charge due and retry-eligible subscriptions, or a single target.
    A subscription target is charged even if it is not yet due.
    """
    body = body or BillingRunRequest()
    if body.subscription_id and body.account_id:
        raise HTTPException(status_code=400, detail="specify subscription_id or account_id, not both")
    target = BillingTarget(subscription_id=body.subscription_id, account_id=body.account_id)
    try:
        summary = scheduler.run(target=target, caller=caller)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return summary.to_dict()


@router.post("/webhook")
async def payment_webhook(request: Request,
                          gateway: PaymentGateway = Depends(get_webhook_gateway),
                          reconciler: WebhookReconciler = Depends(get_reconciler)):
    """Verifies the gateway signature, then reconciles the event against the ledger."""
    body = await request.body()
    sig = request.headers.get("Stripe-Signature")
    try:
        result = await run_in_threadpool(reconciler.handle_payload, body, sig, gateway)
    except WebhookVerificationError as e:
        logger.warning("rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail="invalid webhook signature") from e
    return {"ok": True, "result": result.value}
