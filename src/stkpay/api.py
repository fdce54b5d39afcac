"""HTTP surface of the payment engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, SecretStr
from slowapi.errors import RateLimitExceeded

from .auth import CallerSession, limiter, verify_api_key
from .config import get_settings
from .database import ProviderKind, close_db, get_async_session_factory, init_db
from .errors import ErrorKind, StkPayError, TransactionNotFoundError
from .gateway import InitiationResult
from .reconciliation.models import FinalizeOutcome, TransactionStatusView
from .resolver import Availability
from .services import PaymentEngine

logger = logging.getLogger(__name__)

# HTTP status per error kind; anything unlisted is a 500
STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_CONFIGURED: 409,
    ErrorKind.CONFIG_INACTIVE: 409,
    ErrorKind.CREDENTIALS_NOT_VERIFIED: 409,
    ErrorKind.INVOICE_NOT_FOUND: 404,
    ErrorKind.LEASE_NOT_FOUND: 404,
    ErrorKind.UNIT_NOT_FOUND: 404,
    ErrorKind.PROPERTY_NOT_FOUND: 404,
    ErrorKind.OWNER_NOT_FOUND: 404,
    ErrorKind.INVALID_PHONE: 400,
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.INVALID_CREDENTIALS: 400,
    ErrorKind.INVOICE_ALREADY_PAID: 400,
    ErrorKind.SESSION_EXPIRED: 401,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.TRANSACTION_NOT_FOUND: 404,
    ErrorKind.UNSUPPORTED_PROVIDER: 400,
    ErrorKind.VERIFICATION_UNAVAILABLE: 409,
    ErrorKind.VERIFICATION_FAILED: 502,
    ErrorKind.AMOUNT_MISMATCH: 400,
}

DARAJA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db()
    client = httpx.AsyncClient(timeout=settings.http_timeout)
    app.state.engine = PaymentEngine(
        get_async_session_factory(),
        settings=settings,
        http_client=client,
    )
    logger.info(f"Payment engine started with {settings.poll_profile} poll profile")
    try:
        yield
    finally:
        await client.aclose()
        await close_db()


app = FastAPI(title="STK Push Payment Engine", lifespan=lifespan)
app.state.limiter = limiter


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={"error": "rate-limited", "message": f"Rate limit exceeded: {exc.detail}"},
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(StkPayError)
async def engine_error_handler(request: Request, exc: StkPayError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind.value} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.kind.value}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_engine(request: Request) -> PaymentEngine:
    return request.app.state.engine


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_session_expires_at: Optional[datetime] = Header(None),
) -> CallerSession:
    """Caller session from the forwarding headers set by the front end.

    Requests without ``X-User-Id`` act as the API-key holder, whose session
    does not expire.
    """
    if x_session_expires_at is not None and x_session_expires_at.tzinfo is not None:
        x_session_expires_at = x_session_expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return CallerSession(
        user_id=x_user_id or "api",
        expires_at=x_session_expires_at,
    )


class InitiatePaymentBody(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    amount: Optional[Union[int, float]] = None
    description: Optional[str] = Field(None, max_length=100)
    payer_first_name: Optional[str] = None
    payer_last_name: Optional[str] = None
    payer_email: Optional[str] = None


class VerifyPaymentBody(BaseModel):
    correlation_id: Optional[str] = None
    reference: Optional[str] = None


class SaveCredentialsBody(BaseModel):
    processor_kind: str
    shortcode: str
    consumer_key: Optional[SecretStr] = None
    consumer_secret: Optional[SecretStr] = None
    passkey: Optional[SecretStr] = None
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None
    environment: str = "sandbox"
    display_name: Optional[str] = None
    callback_url: Optional[str] = None
    is_active: bool = True


class PreferenceBody(BaseModel):
    preference: str


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/invoices/{invoice_id}/availability", response_model=Availability)
async def invoice_availability(
    invoice_id: str,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Whether M-Pesa payments can be taken for an invoice."""
    if engine.settings.debug_bypass:
        logger.warning(f"Availability check for invoice {invoice_id} bypassed by debug flag")
        return Availability(
            available=True,
            invoice_id=invoice_id,
            source="debug_bypass",
            message="Availability check bypassed",
        )
    return await engine.check_availability(invoice_id)


@app.post("/payments", response_model=InitiationResult)
@limiter.limit("5/minute")
async def create_payment(
    request: Request,
    body: InitiatePaymentBody,
    engine: PaymentEngine = Depends(get_engine),
    caller: CallerSession = Depends(get_caller),
    api_key: str = Depends(verify_api_key),
):
    """Send an STK push for an invoice and record the pending transaction."""
    return await engine.initiate(
        body.invoice_id,
        body.phone_number,
        caller,
        amount=body.amount,
        description=body.description,
        payer_first_name=body.payer_first_name,
        payer_last_name=body.payer_last_name,
        payer_email=body.payer_email,
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionStatusView)
async def get_transaction(
    transaction_id: str,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    view = await engine.poll(transaction_id)
    if view is None:
        raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
    return view


@app.post("/payments/verify", response_model=FinalizeOutcome)
async def verify_payment(
    body: VerifyPaymentBody,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Ask the provider directly whether a payment went through."""
    return await engine.verify_now(correlation_id=body.correlation_id, reference=body.reference)


async def _ingest(request: Request, engine: PaymentEngine, provider: ProviderKind) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Callback body is not valid JSON") from e
    try:
        result = await engine.ingest_callback(provider, payload)
    except ValueError as e:
        logger.warning(f"Rejected malformed {provider.value} callback: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e
    return result.model_dump(exclude={"outcome"})


@app.post("/callbacks/mpesa")
async def mpesa_callback(request: Request, engine: PaymentEngine = Depends(get_engine)):
    """Daraja STK result callback."""
    await _ingest(request, engine, ProviderKind.MPESA)
    return DARAJA_ACK


@app.post("/callbacks/kopokopo")
async def kopokopo_callback(request: Request, engine: PaymentEngine = Depends(get_engine)):
    """Kopo Kopo incoming payment result callback."""
    result = await _ingest(request, engine, ProviderKind.KOPOKOPO)
    return {"status": "received", **result}


@app.put("/owners/{owner_id}/credentials")
async def save_owner_credentials(
    owner_id: str,
    body: SaveCredentialsBody,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Store an owner's processor credentials. They start unverified."""
    return await engine.save_credentials(owner_id, **body.model_dump())


@app.post("/owners/{owner_id}/credentials/verify")
async def verify_owner_credentials(
    owner_id: str,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return await engine.verify_credentials(owner_id)


@app.put("/owners/{owner_id}/preference")
async def set_owner_preference(
    owner_id: str,
    body: PreferenceBody,
    engine: PaymentEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    return await engine.set_preference(owner_id, body.preference)
