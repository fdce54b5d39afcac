"""Kopo Kopo (aggregator) connector for till_aggregator configurations."""

import logging
from typing import Optional, Dict, Any

import httpx

from .base import (
    ConnectorBase,
    PushRequest,
    PushResponse,
    ProviderResult,
    ProviderCredentials,
    SUCCESS_RESULT_CODE,
)
from ..database.models import ProviderKind
from ..errors import ProviderError, VerificationError

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.kopokopo.com"
PRODUCTION_URL = "https://api.kopokopo.com"

FAILED_RESULT_CODE = 1

# Provider statuses that mean the payment went through
SUCCESS_STATUSES = frozenset({"success", "successful", "processed", "completed", "paid"})
PENDING_STATUSES = frozenset({"pending", "received", "processing"})


def is_success_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in SUCCESS_STATUSES


def is_pending_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in PENDING_STATUSES


class KopoKopoConnector(ConnectorBase):
    """Connector for the Kopo Kopo incoming payments API."""

    provider = ProviderKind.KOPOKOPO

    def base_url(self, credentials: ProviderCredentials) -> str:
        return PRODUCTION_URL if credentials.is_production else SANDBOX_URL

    async def get_access_token(self, credentials: ProviderCredentials) -> str:
        if not credentials.client_id or credentials.client_secret is None:
            raise ProviderError("Kopo Kopo client id and secret are required", error_id="MPESA_CONFIG_MISSING")

        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.base_url(credentials)}/oauth/token",
                    data={
                        "client_id": credentials.client_id,
                        "client_secret": credentials.client_secret.get_secret_value(),
                        "grant_type": "client_credentials",
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise self._timeout_error("Kopo Kopo token request", e) from e
        except httpx.HTTPError as e:
            logger.error(f"Kopo Kopo token request failed: {e}")
            raise ProviderError("Could not reach Kopo Kopo", error_id="MPESA_TOKEN_FAILED") from e

        body = self._json(response)
        token = body.get("access_token")
        if response.status_code != 200 or not token:
            logger.error(f"Kopo Kopo token request rejected with HTTP {response.status_code}")
            raise ProviderError(
                body.get("error_description") or "Failed to obtain Kopo Kopo access token",
                error_id="MPESA_TOKEN_FAILED",
                status_code=response.status_code,
                raw_response=body,
            )
        return token

    def build_payload(self, request: PushRequest, credentials: ProviderCredentials) -> Dict[str, Any]:
        return {
            "payment_channel": "M-PESA STK Push",
            "till_number": f"K{credentials.shortcode}",
            "subscriber": {
                "first_name": request.payer_first_name or "Tenant",
                "last_name": request.payer_last_name or "",
                "phone_number": f"+{request.phone_number}",
                "email": request.payer_email or "",
            },
            "amount": {"currency": "KES", "value": request.amount},
            "metadata": {
                "customer_id": request.customer_id,
                "invoice_id": request.invoice_id,
                "payment_type": "rent",
                "landlord_id": request.owner_id,
                "reference": request.reference,
                "notes": request.description,
            },
            "_links": {"callback_url": request.callback_url},
        }

    async def initiate(
        self,
        request: PushRequest,
        credentials: ProviderCredentials,
    ) -> PushResponse:
        token = await self.get_access_token(credentials)
        payload = self.build_payload(request, credentials)

        try:
            async with self._http() as client:
                response = await client.post(
                    f"{self.base_url(credentials)}/api/v1/incoming_payments",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise self._timeout_error("Kopo Kopo STK push", e) from e
        except httpx.HTTPError as e:
            logger.error(f"Kopo Kopo STK push failed: {e}")
            raise ProviderError("Could not reach Kopo Kopo", error_id="MPESA_STK_FAILED") from e

        location = response.headers.get("location")
        if response.status_code not in (200, 201) or not location:
            body = self._json(response)
            message = body.get("error_message") or body.get("message") or "Kopo Kopo STK push failed"
            logger.warning(f"Kopo Kopo STK push rejected for {request.reference}: {message}")
            raise ProviderError(
                message,
                error_id="MPESA_STK_FAILED",
                status_code=response.status_code,
                raw_response=body,
            )

        payment_request_id = location.rstrip("/").rsplit("/", 1)[-1]
        logger.info(f"Kopo Kopo STK push accepted for {request.reference}: {payment_request_id}")
        return PushResponse(
            correlation_id=payment_request_id,
            status_url=location,
            raw_provider_response={"location": location},
        )

    def _result_from_attributes(
        self,
        attributes: Dict[str, Any],
        correlation_id: Optional[str],
        raw: Dict[str, Any],
    ) -> ProviderResult:
        status = attributes.get("status")
        event = attributes.get("event") or {}
        resource = event.get("resource") or {}
        metadata = attributes.get("metadata") or {}

        if is_success_status(status):
            result_code = SUCCESS_RESULT_CODE
            result_desc = "The service request is processed successfully."
        elif is_pending_status(status):
            result_code = None
            result_desc = f"Payment {status}"
        else:
            result_code = FAILED_RESULT_CODE
            result_desc = event.get("errors") or attributes.get("failure_reason") or f"Payment {status or 'failed'}"

        amount = resource.get("amount")
        return ProviderResult(
            correlation_id=correlation_id,
            reference=metadata.get("reference"),
            result_code=result_code,
            result_desc=str(result_desc),
            receipt_number=resource.get("id") if result_code == SUCCESS_RESULT_CODE else None,
            amount=float(amount) if amount is not None else None,
            phone_number=(resource.get("sender_phone_number") or "").lstrip("+") or None,
            raw=raw,
        )

    def parse_callback(self, payload: Dict[str, Any]) -> ProviderResult:
        """Parse an incoming payment result callback (``data.attributes``)."""
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get("attributes"), dict):
            raise ValueError("Not a Kopo Kopo callback payload")
        return self._result_from_attributes(data["attributes"], data.get("id"), payload)

    async def fetch_status(
        self,
        status_url: str,
        credentials: ProviderCredentials,
    ) -> ProviderResult:
        """Query an incoming payment resource.

        Raises:
            VerificationError: If the provider cannot be queried.
        """
        token = await self.get_access_token(credentials)
        try:
            async with self._http() as client:
                response = await client.get(
                    status_url,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Kopo Kopo status query failed: {e}")
            raise VerificationError("Could not query Kopo Kopo payment status") from e

        body = self._json(response)
        if response.status_code != 200:
            raise VerificationError(
                f"Kopo Kopo status query returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        data = body.get("data") or {}
        attributes = data.get("attributes") or {}
        correlation_id = data.get("id") or status_url.rstrip("/").rsplit("/", 1)[-1]
        return self._result_from_attributes(attributes, correlation_id, body)
