"""Safaricom Daraja (M-Pesa Express) connector for paybill and direct till."""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import httpx

from .base import (
    ConnectorBase,
    PushRequest,
    PushResponse,
    ProviderResult,
    ProviderCredentials,
)
from ..database.models import ProcessorKind, ProviderKind
from ..errors import ProviderError, PROVIDER_CODE_ALIASES

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

# Daraja timestamps are in East Africa Time
EAT = timezone(timedelta(hours=3))


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Daraja STK password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def make_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAT)
    return now.strftime("%Y%m%d%H%M%S")


class DarajaConnector(ConnectorBase):
    """Connector for Safaricom's Daraja API."""

    provider = ProviderKind.MPESA

    def base_url(self, credentials: ProviderCredentials) -> str:
        return PRODUCTION_URL if credentials.is_production else SANDBOX_URL

    async def get_access_token(self, credentials: ProviderCredentials) -> str:
        if credentials.consumer_key is None or credentials.consumer_secret is None:
            raise ProviderError("Daraja consumer key and secret are required", error_id="MPESA_CONFIG_MISSING")

        url = f"{self.base_url(credentials)}/oauth/v1/generate"
        try:
            async with self._http() as client:
                response = await client.get(
                    url,
                    params={"grant_type": "client_credentials"},
                    auth=(
                        credentials.consumer_key.get_secret_value(),
                        credentials.consumer_secret.get_secret_value(),
                    ),
                )
        except httpx.TimeoutException as e:
            raise self._timeout_error("M-Pesa token request", e) from e
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa token request failed: {e}")
            raise ProviderError("Could not reach M-Pesa", error_id="MPESA_TOKEN_FAILED") from e

        body = self._json(response)
        token = body.get("access_token")
        if response.status_code != 200 or not token:
            logger.error(f"M-Pesa token request rejected with HTTP {response.status_code}")
            raise ProviderError(
                body.get("errorMessage") or "Failed to obtain M-Pesa access token",
                error_id="MPESA_TOKEN_FAILED",
                status_code=response.status_code,
                raw_response=body,
            )
        return token

    def build_payload(
        self,
        request: PushRequest,
        credentials: ProviderCredentials,
        timestamp: str,
    ) -> Dict[str, Any]:
        if credentials.passkey is None:
            raise ProviderError("Daraja passkey is required", error_id="MPESA_CONFIG_MISSING")
        if credentials.processor_kind == ProcessorKind.TILL_DIRECT:
            transaction_type = "CustomerBuyGoodsOnline"
        else:
            transaction_type = "CustomerPayBillOnline"
        return {
            "BusinessShortCode": credentials.shortcode,
            "Password": build_password(
                credentials.shortcode,
                credentials.passkey.get_secret_value(),
                timestamp,
            ),
            "Timestamp": timestamp,
            "TransactionType": transaction_type,
            "Amount": request.amount,
            "PartyA": request.phone_number,
            "PartyB": credentials.shortcode,
            "PhoneNumber": request.phone_number,
            "CallBackURL": request.callback_url,
            "AccountReference": request.reference,
            "TransactionDesc": request.description,
        }

    async def initiate(
        self,
        request: PushRequest,
        credentials: ProviderCredentials,
    ) -> PushResponse:
        token = await self.get_access_token(credentials)
        payload = self.build_payload(request, credentials, make_timestamp())

        url = f"{self.base_url(credentials)}/mpesa/stkpush/v1/processrequest"
        try:
            async with self._http() as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as e:
            raise self._timeout_error("STK push", e) from e
        except httpx.HTTPError as e:
            logger.error(f"STK push request failed: {e}")
            raise ProviderError("Could not reach M-Pesa", error_id="MPESA_STK_FAILED") from e

        body = self._json(response)
        if str(body.get("ResponseCode")) == "0" and body.get("CheckoutRequestID"):
            logger.info(f"STK push accepted for {request.reference}: {body['CheckoutRequestID']}")
            return PushResponse(
                correlation_id=body["CheckoutRequestID"],
                merchant_request_id=body.get("MerchantRequestID"),
                customer_message=body.get("CustomerMessage"),
                raw_provider_response=body,
            )

        error_code = body.get("errorCode")
        error_id = error_code if error_code in PROVIDER_CODE_ALIASES else "MPESA_STK_FAILED"
        message = (
            body.get("errorMessage")
            or body.get("ResponseDescription")
            or "STK push request failed"
        )
        logger.warning(f"STK push rejected for {request.reference}: {error_code} {message}")
        raise ProviderError(
            message,
            error_id=error_id,
            status_code=response.status_code,
            raw_response=body,
        )

    def parse_callback(self, payload: Dict[str, Any]) -> ProviderResult:
        """Parse a ``Body.stkCallback`` payload."""
        try:
            callback = payload["Body"]["stkCallback"]
            checkout_id = callback["CheckoutRequestID"]
            result_code = int(callback["ResultCode"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError("Not a Daraja STK callback payload") from e

        items: Dict[str, Any] = {}
        for item in (callback.get("CallbackMetadata") or {}).get("Item", []):
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

        amount = items.get("Amount")
        phone = items.get("PhoneNumber")
        return ProviderResult(
            correlation_id=checkout_id,
            result_code=result_code,
            result_desc=callback.get("ResultDesc"),
            receipt_number=items.get("MpesaReceiptNumber"),
            amount=float(amount) if amount is not None else None,
            phone_number=str(phone) if phone is not None else None,
            raw=payload,
        )
