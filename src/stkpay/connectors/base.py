"""Canonical provider models and the connector interface."""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, AsyncIterator

import httpx
from pydantic import BaseModel, Field, SecretStr

from ..database.models import ProcessorKind, ProviderKind
from ..errors import ProviderError, UnsupportedProviderError

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = 0

DEFAULT_TIMEOUT = 30.0


# Canonical models
class PushRequest(BaseModel):
    amount: int  # whole shillings
    phone_number: str  # normalized 254XXXXXXXXX
    reference: str  # application reference, INV-<invoice id>
    description: str = "Rent payment"
    callback_url: str
    invoice_id: str
    owner_id: Optional[str] = None
    customer_id: Optional[str] = None
    payer_first_name: Optional[str] = None
    payer_last_name: Optional[str] = None
    payer_email: Optional[str] = None


class PushResponse(BaseModel):
    correlation_id: str
    merchant_request_id: Optional[str] = None
    # Resource URL the provider can be queried on (aggregator only)
    status_url: Optional[str] = None
    customer_message: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None


class ProviderResult(BaseModel):
    """A provider's verdict on a push request, whatever channel it came through."""
    correlation_id: Optional[str] = None
    reference: Optional[str] = None
    # None while the provider still reports the request as in flight
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[float] = None
    phone_number: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @property
    def is_final(self) -> bool:
        return self.result_code is not None


class ProviderCredentials(BaseModel):
    """Decrypted credentials, held only for the duration of one call."""
    provider: ProviderKind
    processor_kind: ProcessorKind
    environment: str = "sandbox"
    shortcode: str
    consumer_key: Optional[SecretStr] = None
    consumer_secret: Optional[SecretStr] = None
    passkey: Optional[SecretStr] = None
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class ConnectorBase(ABC):
    """
    Provider connector interface. Implementations normalize every provider
    response into the canonical models above so nothing downstream branches
    on provider-specific shapes.
    """

    provider: ProviderKind

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            client: Shared HTTP client. If None, a client is opened per call.
            timeout: Request timeout in seconds for per-call clients.
        """
        self._client = client
        self.timeout = timeout

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    @abstractmethod
    async def get_access_token(self, credentials: ProviderCredentials) -> str:
        """Obtain an OAuth access token. Doubles as a credential check."""
        raise NotImplementedError

    @abstractmethod
    async def initiate(
        self,
        request: PushRequest,
        credentials: ProviderCredentials,
    ) -> PushResponse:
        """
        Send a push-payment request to the payer's handset.

        Raises:
            ProviderError: If the provider rejects the request.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> ProviderResult:
        """
        Canonicalize a provider callback payload.

        Raises:
            ValueError: If the payload does not have the provider's shape.
        """
        raise NotImplementedError

    async def fetch_status(
        self,
        status_url: str,
        credentials: ProviderCredentials,
    ) -> ProviderResult:
        """Query the provider for the current state of a push request."""
        raise UnsupportedProviderError(
            f"Provider {self.provider.value} does not support status queries"
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _timeout_error(operation: str, exc: Exception) -> ProviderError:
        logger.warning(f"Provider timeout during {operation}: {exc}")
        return ProviderError(f"Timed out during {operation}", error_id="PROVIDER_TIMEOUT")
