"""Provider connectors."""

from typing import Dict, Optional

import httpx

from .base import (
    ConnectorBase,
    PushRequest,
    PushResponse,
    ProviderResult,
    ProviderCredentials,
    SUCCESS_RESULT_CODE,
)
from .daraja import DarajaConnector
from .kopokopo import KopoKopoConnector
from .simulator import SimulatorConnector, SimulatorConfig, SimulatorScenario
from ..database.models import ProviderKind


def default_connectors(
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> Dict[ProviderKind, ConnectorBase]:
    """Connector registry keyed by provider kind."""
    return {
        ProviderKind.MPESA: DarajaConnector(client=client, timeout=timeout),
        ProviderKind.KOPOKOPO: KopoKopoConnector(client=client, timeout=timeout),
    }


__all__ = [
    "ConnectorBase",
    "PushRequest",
    "PushResponse",
    "ProviderResult",
    "ProviderCredentials",
    "SUCCESS_RESULT_CODE",
    "DarajaConnector",
    "KopoKopoConnector",
    "SimulatorConnector",
    "SimulatorConfig",
    "SimulatorScenario",
    "default_connectors",
]
