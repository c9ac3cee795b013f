"""HTTP API for card purchases through the processor gateway."""

import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional, Dict, Any
from urllib.parse import parse_qs, urlencode

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import INIT_RATE_LIMIT, get_client_ip, limiter, verify_api_key
from .callbacks import CallbackVerifier, callback_response
from .config import GatewayConfig
from .connectors.base import (
    BillingAddress,
    CardData,
    ErrorSource,
    PaymentRequest,
    PaymentResponse,
    PaymentStatus,
)
from .connectors.gate_connector import GateConnector
from .database import Invoice, InvoiceStatus, close_db, get_db, init_db
from .exceptions import CardValidationError, InvalidCallbackError, SignatureMismatchError
from .services import PurchaseService
from .signature import SignatureEngine
from .three_ds import ThreeDSOrchestrator

logger = logging.getLogger(__name__)

WALLET_PATH = "/dashboard/wallet"

_orchestrator: Optional[ThreeDSOrchestrator] = None


@lru_cache
def get_settings() -> GatewayConfig:
    return GatewayConfig.from_env()


def get_orchestrator() -> ThreeDSOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        config = get_settings()
        _orchestrator = ThreeDSOrchestrator(
            GateConnector(config),
            settle_delay=config.fingerprint_settle_seconds,
        )
    return _orchestrator


def get_verifier() -> CallbackVerifier:
    return CallbackVerifier(SignatureEngine(get_settings().secret_key))


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    if _orchestrator is not None:
        await _orchestrator.connector.aclose()
    await close_db()


app = FastAPI(title="Card Gate - Payment API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

router = APIRouter(prefix="/api/payments/gate", tags=["payments"])


class InitPaymentBody(BaseModel):
    """Purchase request as submitted by the checkout form."""
    user_id: str = Field(..., min_length=1)
    credits: int = Field(..., gt=0)
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    card_number: str = Field(..., min_length=13, max_length=23)
    expiry_month: str = Field(..., min_length=1, max_length=2)
    expiry_year: str = Field(..., min_length=2, max_length=4)
    cvv: str = Field(..., min_length=3, max_length=4)
    card_holder: str = Field(..., min_length=2)
    customer_email: Optional[str] = None
    billing_address: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_postal_code: Optional[str] = None
    billing_country: Optional[str] = None

    def to_payment_request(self, customer_ip: str) -> PaymentRequest:
        billing = None
        if any([self.billing_address, self.billing_city, self.billing_postal_code, self.billing_country]):
            billing = BillingAddress(
                address=self.billing_address,
                city=self.billing_city,
                state=self.billing_state,
                postal_code=self.billing_postal_code,
                country=self.billing_country,
            )
        return PaymentRequest(
            user_id=self.user_id,
            credits=self.credits,
            amount=self.amount,
            currency=self.currency,
            card=CardData(
                pan=self.card_number,
                expiry_month=self.expiry_month,
                expiry_year=self.expiry_year,
                cvv=self.cvv,
                card_holder=self.card_holder,
            ),
            customer_ip=customer_ip,
            customer_email=self.customer_email,
            billing=billing,
        )


class PaymentIdBody(BaseModel):
    payment_id: str = Field(..., min_length=1)


def _payment_body(response: PaymentResponse, orchestrator: ThreeDSOrchestrator) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "status": response.status.value,
        "payment_id": response.payment_id,
    }
    if response.message:
        body["message"] = response.message
    if response.status in (PaymentStatus.THREE_DS_REQUIRED, PaymentStatus.PENDING):
        # only the first caller gets the form to post; a callback may have
        # delivered a challenge the status reply does not repeat
        form = orchestrator.pending_form(response.payment_id)
        if form is not None:
            body["status"] = PaymentStatus.THREE_DS_REQUIRED.value
            body["challenge"] = form.model_dump(mode="json")
    return body


async def _apply(service: PurchaseService, response: PaymentResponse, initiation: bool = False) -> None:
    if response.status == PaymentStatus.THREE_DS_REQUIRED:
        await service.record_challenge(response.payment_id, response.challenge)
    elif response.status == PaymentStatus.ERROR:
        # only a rejected sale is final; later errors leave the invoice pending
        if initiation and response.error_source == ErrorSource.PROCESSOR:
            await service.reject_invoice(response.payment_id, response.message)
    else:
        await service.apply_outcome(response.payment_id, response.status, response.message)


def _settled_response(invoice: Invoice) -> Optional[PaymentResponse]:
    """The recorded outcome of an invoice that no longer needs the processor."""
    if invoice.status == InvoiceStatus.PAID.value:
        return PaymentResponse(payment_id=invoice.payment_id, status=PaymentStatus.SUCCESS)
    if invoice.status == InvoiceStatus.FAILED.value:
        return PaymentResponse(
            payment_id=invoice.payment_id,
            status=PaymentStatus.DECLINE,
            message=invoice.status_message or "Payment failed",
        )
    if invoice.status == InvoiceStatus.ERROR.value:
        return PaymentResponse(
            payment_id=invoice.payment_id,
            status=PaymentStatus.ERROR,
            message=invoice.status_message or "Payment error",
            error_source=ErrorSource.PROCESSOR,
        )
    return None


def _wallet_redirect(config: GatewayConfig, payment_id: str, status: str, message: Optional[str] = None) -> str:
    params: Dict[str, str] = {}
    if status == PaymentStatus.SUCCESS.value:
        params = {"status": "success", "payment_id": payment_id}
    elif status in (PaymentStatus.DECLINE.value, "declined"):
        params = {"status": "declined", "payment_id": payment_id}
        if message:
            params["message"] = message
    url = f"{config.public_base_url}{WALLET_PATH}"
    return f"{url}?{urlencode(params)}" if params else url


@router.post("/init")
@limiter.limit(INIT_RATE_LIMIT)
async def init_payment(
    request: Request,
    body: InitPaymentBody,
    db: AsyncSession = Depends(get_db),
    orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """
    Start a card purchase.

    Returns ``success``, ``pending`` or ``3ds_required`` with the challenge
    form the browser must auto-post. Declines and errors answer 400.
    """
    payment_request = body.to_payment_request(get_client_ip(request))
    try:
        response = await orchestrator.start(payment_request)
    except CardValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    service = PurchaseService(db)
    await service.create_invoice(payment_request, response.payment_id)
    await _apply(service, response, initiation=True)

    if response.status in (PaymentStatus.DECLINE, PaymentStatus.ERROR):
        return JSONResponse(
            status_code=400,
            content={
                "status": response.status.value,
                "payment_id": response.payment_id,
                "message": response.message or "Payment declined",
            },
        )
    return _payment_body(response, orchestrator)


@router.get("/status")
async def payment_status(
    payment_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """
    Current status of a purchase. Settled invoices answer from the database
    without contacting the processor.
    """
    service = PurchaseService(db)
    invoice = await service.get_invoice(payment_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Payment not found")

    if invoice.status == InvoiceStatus.PAID.value:
        return {
            "status": PaymentStatus.SUCCESS.value,
            "payment_id": payment_id,
            "credits": invoice.credits_amount,
            "balance": await service.get_balance(invoice.user_id),
        }
    settled = _settled_response(invoice)
    if settled is not None:
        return {
            "status": settled.status.value,
            "payment_id": payment_id,
            "message": settled.message,
        }

    response = await orchestrator.refresh(payment_id)
    await _apply(service, response)
    body = _payment_body(response, orchestrator)
    if response.status == PaymentStatus.SUCCESS:
        body["credits"] = invoice.credits_amount
        body["balance"] = await service.get_balance(invoice.user_id)
    return body


@router.post("/callback")
async def payment_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator),
    verifier: CallbackVerifier = Depends(get_verifier),
):
    """
    Processor notification. Always answers 200 so the processor does not
    keep retrying; unverifiable notifications change nothing.
    """
    raw = await request.body()
    try:
        callback = verifier.verify_and_parse(raw)
    except SignatureMismatchError:
        return {"status": "invalid_signature"}
    except InvalidCallbackError as e:
        logger.warning(f"Discarding malformed callback: {e}")
        return {"status": "invalid_payload"}

    payment_id = callback.payment_id
    if not payment_id:
        return {"status": "ignored"}

    service = PurchaseService(db)
    invoice = await service.get_invoice(payment_id)
    if invoice is None:
        logger.warning(f"Callback for unknown payment {payment_id}")
        return {"status": "ignored", "payment_id": payment_id}

    if invoice.status == InvoiceStatus.PENDING.value:
        orchestrator.observe(payment_id, callback_response(callback))
    await service.handle_callback(callback)
    return {"status": "ok", "payment_id": payment_id}


@router.get("/3ds-return")
async def three_ds_return_redirect(
    payment_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
):
    """Browser landing after the processor's own success/decline redirect."""
    url = _wallet_redirect(get_settings(), payment_id or "", status or "")
    return RedirectResponse(url, status_code=303)


@router.post("/3ds-return")
async def three_ds_return(
    payment_id: Optional[str] = Query(None),
    pa_res: Optional[str] = Form(None, alias="PaRes"),
    cres: Optional[str] = Form(None),
    md: Optional[str] = Form(None, alias="MD"),
    db: AsyncSession = Depends(get_db),
    orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator),
):
    """
    ACS return post carrying ``PaRes`` (basic 3DS) or ``cres`` (3DS2
    challenge). The result is submitted to the processor at most once.
    """
    if not payment_id and md and md.startswith(f"{GateConnector.PAYMENT_ID_PREFIX}_"):
        payment_id = md
    if not payment_id:
        return JSONResponse(status_code=400, content={"status": "error", "message": "Missing payment ID"})

    auth_data = pa_res or cres
    if not auth_data:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "payment_id": payment_id, "message": "Missing authentication data"},
        )

    service = PurchaseService(db)
    invoice = await service.get_invoice(payment_id)
    if invoice is None:
        return JSONResponse(
            status_code=404,
            content={"status": "error", "payment_id": payment_id, "message": "Payment not found"},
        )

    response = _settled_response(invoice)
    if response is None:
        response = await orchestrator.complete_return(payment_id, auth_data, md)
        await _apply(service, response)
    return {
        "status": response.status.value,
        "payment_id": payment_id,
        "message": response.message,
        "redirect_url": _wallet_redirect(get_settings(), payment_id, response.status.value, response.message),
    }


@router.get("/3ds-notify")
async def three_ds_notify_status(
    payment_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Whether the fingerprinting notification has arrived."""
    invoice = await PurchaseService(db).get_invoice(payment_id)
    data = (invoice.three_ds_data if invoice else None) or {}
    return {
        "payment_id": payment_id,
        "received": bool(data.get("fingerprint_complete")),
        "timestamp": data.get("fingerprint_completed_at"),
    }


@router.post("/3ds-notify")
async def three_ds_notify(
    request: Request,
    payment_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Fingerprinting notification from the ACS. Always acknowledged.
    """
    if not payment_id:
        payment_id = await _payment_id_from_body(request)
    if payment_id:
        await PurchaseService(db).mark_fingerprint_complete(payment_id)
    else:
        logger.warning("3DS notification without payment id")
    return {"status": "received", "payment_id": payment_id}


async def _payment_id_from_body(request: Request) -> Optional[str]:
    raw = await request.body()
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        values = parse_qs(text).get("payment_id")
        return values[0] if values else None
    if isinstance(parsed, dict):
        return parsed.get("payment_id") or parsed.get("paymentId")
    return None


@router.post("/3ds-check")
async def three_ds_check(
    body: PaymentIdBody,
    db: AsyncSession = Depends(get_db),
    orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """
    Finish extended 3DS once the hidden fingerprinting iframe was posted.
    Answers the final outcome (frictionless) or a 3DS2 challenge form.
    """
    service = PurchaseService(db)
    invoice = await service.get_invoice(body.payment_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Payment not found")

    settled = _settled_response(invoice)
    if settled is not None:
        return _payment_body(settled, orchestrator)
    response = await orchestrator.complete_fingerprint(body.payment_id)
    await _apply(service, response)
    return _payment_body(response, orchestrator)


app.include_router(router)


@app.get("/health")
async def health(orchestrator: ThreeDSOrchestrator = Depends(get_orchestrator)):
    return {"status": "ok", "gateway": orchestrator.connector.health_check()}
