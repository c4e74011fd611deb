import logging

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from payments.config import configure_logging, settings
from payments.database import Base, SessionLocal, engine
from payments.errors import PaymentsError
from payments.models import GatewayType
from payments.notifier import LoggingNotifier, NotifierConfig
from payments.routes import router
from payments.selector import gateways
from payments.webhooks import WebhookReconciler

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Program Marketplace Payments")

app.include_router(router)

Base.metadata.create_all(bind=engine)

notifier = LoggingNotifier(NotifierConfig.from_settings(settings))
reconcilers = {
    GatewayType.STRIPE: WebhookReconciler(gateways[GatewayType.STRIPE], notifier),
    GatewayType.PAYPAL: WebhookReconciler(gateways[GatewayType.PAYPAL], notifier),
}


@app.exception_handler(PaymentsError)
async def payments_error_handler(request: Request, exc: PaymentsError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    content = {"detail": exc.message, "error": exc.code}
    if getattr(exc, "retryable", False):
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


async def _reconcile(gateway_type: str, request: Request) -> dict:
    payload = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}

    db = SessionLocal()
    try:
        await run_in_threadpool(reconcilers[gateway_type].handle, db, payload, headers)
    finally:
        db.close()
    return {"ok": True}


@app.post("/payments/stripe/webhook")
async def stripe_webhook(request: Request):
    return await _reconcile(GatewayType.STRIPE, request)


@app.post("/payments/paypal/webhook")
async def paypal_webhook(request: Request):
    return await _reconcile(GatewayType.PAYPAL, request)
