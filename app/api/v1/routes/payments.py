from __future__ import annotations
import logging
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import get_orchestrator
from app.api.errors import payment_error_response
from app.core.errors import AuthenticationError, PaymentError, StoreError, ValidationError
from app.models.transaction import CARD_METHODS, PaymentMethod
from app.schemas.payments import (
    BankRedirectIdentity,
    CardIdentity,
    CarrierBillingIdentity,
    CarrierPaymentOut,
    CellPayPaymentRequest,
    PaymentIntentOut,
    PaymentIntentRequest,
    RedirectPaymentOut,
    TrustlyPaymentRequest,
    parse_identity,
)
from app.services.payment_orchestrator import BeginPaymentCommand, PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

WALLETS = {
    PaymentMethod.STRIPE_GOOGLE_PAY.value: "google_pay",
    PaymentMethod.STRIPE_APPLE_PAY.value: "apple_pay",
}


def _run(background_tasks: BackgroundTasks, call: Callable[[], dict]):
    # Errors are rendered here rather than by the app handler so queued notifications still go out.
    try:
        return call()
    except PaymentError as e:
        return payment_error_response(e, background=background_tasks)
    except SQLAlchemyError as e:
        logger.exception("Database error while starting a payment")
        return payment_error_response(StoreError(f"Database error: {e}"), background=background_tasks)


@router.post("/create-payment-intent")
def create_payment_intent(req: PaymentIntentRequest, background_tasks: BackgroundTasks,
                          orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    def call():
        if req.paymentMethod not in {m.value for m in CARD_METHODS}:
            raise ValidationError(f"Unsupported card payment method: {req.paymentMethod}")
        result = orchestrator.begin_payment(BeginPaymentCommand(
            username=req.username,
            amount=req.amount,
            method=req.paymentMethod,
            package_id=req.packageId,
            identity=CardIdentity(wallet=WALLETS.get(req.paymentMethod)),
        ))
        return PaymentIntentOut(clientSecret=result.client_secret or "", transactionId=result.transaction_id).model_dump()
    return _run(background_tasks, call)


@router.post("/trustly-payment")
def trustly_payment(req: TrustlyPaymentRequest, background_tasks: BackgroundTasks,
                    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    def call():
        identity = parse_identity(BankRedirectIdentity, country=req.country, firstName=req.firstName,
                                  lastName=req.lastName, email=req.email)
        result = orchestrator.begin_payment(BeginPaymentCommand(
            username=req.username,
            amount=req.amount,
            method=PaymentMethod.TRUSTLY.value,
            package_id=req.packageId,
            identity=identity,
        ))
        return RedirectPaymentOut(
            transactionId=result.transaction_id,
            providerTransactionId=result.provider_transaction_id,
            redirectUrl=result.redirect_url,
            status=result.status,
        ).model_dump()
    return _run(background_tasks, call)


@router.post("/cellpay-payment")
def cellpay_payment(req: CellPayPaymentRequest, background_tasks: BackgroundTasks,
                    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    def call():
        identity = parse_identity(CarrierBillingIdentity, phoneNumber=req.phoneNumber)
        result = orchestrator.begin_payment(BeginPaymentCommand(
            username=req.username,
            amount=req.amount,
            method=PaymentMethod.CELLPAY.value,
            package_id=req.packageId,
            identity=identity,
        ))
        return CarrierPaymentOut(
            transactionId=result.transaction_id,
            providerTransactionId=result.provider_transaction_id,
            status=result.status,
        ).model_dump()
    return _run(background_tasks, call)


def _webhook_error(e: PaymentError, background_tasks: BackgroundTasks) -> JSONResponse:
    if not isinstance(e, AuthenticationError):
        logger.warning("Webhook rejected: %s", e)
    return JSONResponse(status_code=400 if e.status_code < 500 else e.status_code,
                        content={"error": e.public_message}, background=background_tasks)


@router.post("/stripe-webhook")
async def stripe_webhook(req: Request, background_tasks: BackgroundTasks,
                         orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    body = await req.body()
    try:
        await run_in_threadpool(orchestrator.handle_stripe_webhook, body, req.headers.get("stripe-signature"))
    except PaymentError as e:
        return _webhook_error(e, background_tasks)
    except SQLAlchemyError as e:
        logger.exception("Database error while handling a stripe webhook")
        return _webhook_error(StoreError(f"Database error: {e}"), background_tasks)
    return {"received": True}


@router.post("/trustly-webhook")
async def trustly_webhook(req: Request, background_tasks: BackgroundTasks,
                          orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    body = await req.body()
    try:
        await run_in_threadpool(orchestrator.handle_trustly_webhook, body, req.headers.get("x-trustly-signature"))
    except PaymentError as e:
        return _webhook_error(e, background_tasks)
    except SQLAlchemyError as e:
        logger.exception("Database error while handling a trustly webhook")
        return _webhook_error(StoreError(f"Database error: {e}"), background_tasks)
    return {"status": "OK"}
