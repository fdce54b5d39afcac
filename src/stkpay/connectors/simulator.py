"""Simulator connector for exercising payment flows without provider calls."""

import uuid
import random
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

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

# Daraja result code when the payer dismisses the prompt
RESULT_CANCELLED_BY_USER = 1032


class SimulatorScenario(str, Enum):
    """Predefined outcomes for a push request."""
    ACCEPT = "accept"
    REJECT = "reject"
    TOKEN_FAILURE = "token_failure"
    TIMEOUT = "timeout"


@dataclass
class SimulatedPush:
    """In-memory record of a push request sent to the simulator."""
    correlation_id: str
    merchant_request_id: str
    request: PushRequest
    created_at: datetime = field(default_factory=datetime.utcnow)
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    scenario: SimulatorScenario = SimulatorScenario.ACCEPT
    delay_ms: int = 0  # Simulated response delay in ms
    seed: Optional[int] = None  # Random seed for reproducible receipts


class SimulatorConnector(ConnectorBase):
    """
    Stand-in provider for tests and local development.

    Push requests are stored in memory and stay pending until ``complete``
    is called, which also returns a Daraja-shaped callback payload that can
    be fed to callback ingestion.
    """

    # Payer phone numbers that trigger specific behaviors
    PHONE_REJECT = "254700000001"
    PHONE_TIMEOUT = "254700000002"

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        provider: ProviderKind = ProviderKind.MPESA,
    ):
        super().__init__()
        self.config = config or SimulatorConfig()
        self.provider = provider
        self.pushes: Dict[str, SimulatedPush] = {}
        self.token_requests = 0
        self.status_queries = 0
        self._rng = random.Random(self.config.seed)
        logger.info(f"SimulatorConnector initialized for {provider.value}")

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:20]}"

    def _generate_receipt(self) -> str:
        alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
        return "S" + "".join(self._rng.choice(alphabet) for _ in range(9))

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    def _scenario_for(self, request: PushRequest) -> SimulatorScenario:
        if request.phone_number == self.PHONE_REJECT:
            return SimulatorScenario.REJECT
        if request.phone_number == self.PHONE_TIMEOUT:
            return SimulatorScenario.TIMEOUT
        return self.config.scenario

    async def get_access_token(self, credentials: ProviderCredentials) -> str:
        await self._apply_delay()
        self.token_requests += 1
        if self.config.scenario == SimulatorScenario.TOKEN_FAILURE:
            raise ProviderError("Simulated token failure", error_id="MPESA_TOKEN_FAILED")
        return f"sim_token_{self.token_requests}"

    async def initiate(
        self,
        request: PushRequest,
        credentials: ProviderCredentials,
    ) -> PushResponse:
        await self.get_access_token(credentials)
        scenario = self._scenario_for(request)

        if scenario == SimulatorScenario.TIMEOUT:
            raise ProviderError("Simulated timeout", error_id="PROVIDER_TIMEOUT")
        if scenario == SimulatorScenario.REJECT:
            raise ProviderError(
                "Simulated STK push rejection",
                error_id="MPESA_STK_FAILED",
                status_code=400,
                raw_response={"errorCode": "400.002.02", "simulator": True},
            )

        push = SimulatedPush(
            correlation_id=self._generate_id("ws_CO"),
            merchant_request_id=self._generate_id("MR"),
            request=request,
        )
        self.pushes[push.correlation_id] = push
        logger.info(f"Simulated push {push.correlation_id} for {request.reference}")

        status_url = None
        if self.provider == ProviderKind.KOPOKOPO:
            status_url = f"https://simulator.local/api/v1/incoming_payments/{push.correlation_id}"
        return PushResponse(
            correlation_id=push.correlation_id,
            merchant_request_id=push.merchant_request_id,
            status_url=status_url,
            customer_message="Success. Request accepted for processing",
            raw_provider_response={"simulator": True},
        )

    def complete(
        self,
        correlation_id: str,
        result_code: int = SUCCESS_RESULT_CODE,
        result_desc: Optional[str] = None,
        receipt_number: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Settle a simulated push and return the matching callback payload.

        Args:
            correlation_id: Id returned by ``initiate``.
            result_code: 0 for success; any other value is a failure.
            result_desc: Provider description; a default is used if None.
            receipt_number: Receipt to report; generated on success if None.
            amount: Amount to report; defaults to the requested amount.
        """
        push = self.pushes.get(correlation_id)
        if push is None:
            raise KeyError(f"Unknown simulated push: {correlation_id}")

        push.result_code = result_code
        if result_code == SUCCESS_RESULT_CODE:
            push.result_desc = result_desc or "The service request is processed successfully."
            push.receipt_number = receipt_number or self._generate_receipt()
        else:
            push.result_desc = result_desc or "Request cancelled by user"

        callback: Dict[str, Any] = {
            "MerchantRequestID": push.merchant_request_id,
            "CheckoutRequestID": push.correlation_id,
            "ResultCode": result_code,
            "ResultDesc": push.result_desc,
        }
        if result_code == SUCCESS_RESULT_CODE:
            callback["CallbackMetadata"] = {"Item": [
                {"Name": "Amount", "Value": amount if amount is not None else push.request.amount},
                {"Name": "MpesaReceiptNumber", "Value": push.receipt_number},
                {"Name": "PhoneNumber", "Value": int(push.request.phone_number)},
            ]}
        return {"Body": {"stkCallback": callback}}

    def parse_callback(self, payload: Dict[str, Any]) -> ProviderResult:
        try:
            callback = payload["Body"]["stkCallback"]
            correlation_id = callback["CheckoutRequestID"]
            result_code = int(callback["ResultCode"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError("Not a simulator callback payload") from e

        items = {
            item["Name"]: item.get("Value")
            for item in (callback.get("CallbackMetadata") or {}).get("Item", [])
        }
        amount = items.get("Amount")
        phone = items.get("PhoneNumber")
        return ProviderResult(
            correlation_id=correlation_id,
            result_code=result_code,
            result_desc=callback.get("ResultDesc"),
            receipt_number=items.get("MpesaReceiptNumber"),
            amount=float(amount) if amount is not None else None,
            phone_number=str(phone) if phone is not None else None,
            raw=payload,
        )

    async def fetch_status(
        self,
        status_url: str,
        credentials: ProviderCredentials,
    ) -> ProviderResult:
        await self.get_access_token(credentials)
        self.status_queries += 1
        correlation_id = status_url.rstrip("/").rsplit("/", 1)[-1]
        push = self.pushes.get(correlation_id)
        if push is None:
            raise VerificationError(f"Unknown simulated payment: {correlation_id}")
        return ProviderResult(
            correlation_id=correlation_id,
            reference=push.request.reference,
            result_code=push.result_code,
            result_desc=push.result_desc or "Payment pending",
            receipt_number=push.receipt_number,
            amount=float(push.request.amount),
            phone_number=push.request.phone_number,
            raw={"simulator": True},
        )
