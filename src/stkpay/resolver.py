"""Resolution of which processor configuration applies to a payment."""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .database import (
    ConfigPreference,
    Invoice,
    OwnershipRepository,
    PreferenceRepository,
    ProcessorConfig,
    ProcessorConfigRepository,
    ProcessorKind,
    ProviderKind,
)
from .errors import ConfigurationError, ErrorKind, ReferenceChainError

logger = logging.getLogger(__name__)

SOURCE_CUSTOM = "custom"
SOURCE_PLATFORM = "platform_default"


@dataclass(frozen=True)
class ResolvedConfig:
    """The processor configuration one initiation attempt will use.

    ``config`` is set for an owner's own configuration and ``None`` for the
    platform default, whose credentials live in process settings.
    """
    owner_id: str
    source: str
    processor_kind: ProcessorKind
    shortcode: str
    environment: str
    config: Optional[ProcessorConfig] = None
    callback_url: Optional[str] = None

    @property
    def provider(self) -> ProviderKind:
        return self.processor_kind.provider

    @property
    def is_platform_default(self) -> bool:
        return self.source == SOURCE_PLATFORM


class Availability(BaseModel):
    """Whether push payments can be taken for an invoice, and why not."""
    available: bool
    invoice_id: str
    owner_id: Optional[str] = None
    source: Optional[str] = None
    processor_kind: Optional[str] = None
    shortcode: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ConfigResolver:
    """Decides which credentials apply to a payee.

    Pure reads only; nothing is cached between calls, so every initiation
    attempt observes the current configuration.
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.ownership = OwnershipRepository(session)
        self.configs = ProcessorConfigRepository(session)
        self.preferences = PreferenceRepository(session)

    async def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.ownership.get_invoice(invoice_id)
        if invoice is None:
            raise ReferenceChainError(ErrorKind.INVOICE_NOT_FOUND, invoice_id)
        return invoice

    async def resolve_owner_for_invoice(self, invoice_id: str) -> str:
        """Walk invoice -> lease -> unit -> property -> owner.

        Raises:
            ReferenceChainError: Naming the first missing link.
        """
        invoice = await self.get_invoice(invoice_id)
        lease = await self.ownership.get_lease(invoice.lease_id) if invoice.lease_id else None
        if lease is None:
            raise ReferenceChainError(ErrorKind.LEASE_NOT_FOUND, invoice.lease_id)
        unit = await self.ownership.get_unit(lease.unit_id) if lease.unit_id else None
        if unit is None:
            raise ReferenceChainError(ErrorKind.UNIT_NOT_FOUND, lease.unit_id)
        prop = await self.ownership.get_property(unit.property_id) if unit.property_id else None
        if prop is None:
            raise ReferenceChainError(ErrorKind.PROPERTY_NOT_FOUND, unit.property_id)
        owner = await self.ownership.get_owner(prop.owner_id) if prop.owner_id else None
        if owner is None:
            raise ReferenceChainError(ErrorKind.OWNER_NOT_FOUND, prop.owner_id)
        return owner.id

    async def resolve_for_owner(self, owner_id: str) -> ResolvedConfig:
        """Apply the configuration policy for an owner.

        1. An active configuration is used, provided its credentials are verified.
        2. An inactive configuration blocks payments.
        3. Otherwise the owner's preference decides: platform default (also
           when unset) or a hard failure for ``custom``.

        Raises:
            ConfigurationError: With kind credentials-not-verified,
                config-inactive or not-configured.
        """
        active = await self.configs.get_active_for_owner(owner_id)
        if active is not None:
            if not active.credentials_verified:
                raise ConfigurationError(
                    "M-Pesa credentials have not been verified yet",
                    kind=ErrorKind.CREDENTIALS_NOT_VERIFIED,
                    details={"owner_id": owner_id},
                )
            return ResolvedConfig(
                owner_id=owner_id,
                source=SOURCE_CUSTOM,
                processor_kind=active.kind,
                shortcode=active.shortcode,
                environment=active.environment,
                config=active,
                callback_url=active.callback_url,
            )

        existing = await self.configs.get_for_owner(owner_id)
        if existing is not None:
            raise ConfigurationError(
                "M-Pesa configuration is inactive",
                kind=ErrorKind.CONFIG_INACTIVE,
                details={"owner_id": owner_id},
            )

        preference = await self.preferences.get_value(owner_id)
        if preference == ConfigPreference.CUSTOM:
            raise ConfigurationError(
                "Owner requires custom M-Pesa credentials but none are configured",
                kind=ErrorKind.NOT_CONFIGURED,
                details={"owner_id": owner_id},
            )
        return self.platform_default(owner_id)

    def platform_default(self, owner_id: str) -> ResolvedConfig:
        platform = self.settings.platform_daraja
        if platform is None:
            raise ConfigurationError(
                "Platform M-Pesa credentials are not configured",
                kind=ErrorKind.NOT_CONFIGURED,
                details={"owner_id": owner_id},
            )
        return ResolvedConfig(
            owner_id=owner_id,
            source=SOURCE_PLATFORM,
            processor_kind=ProcessorKind.PAYBILL,
            shortcode=platform.shortcode,
            environment=platform.environment,
        )

    async def resolve_for_invoice(self, invoice_id: str) -> ResolvedConfig:
        owner_id = await self.resolve_owner_for_invoice(invoice_id)
        resolved = await self.resolve_for_owner(owner_id)
        logger.debug(
            f"Invoice {invoice_id} resolved to {resolved.source} "
            f"{resolved.processor_kind.value} config for owner {owner_id}"
        )
        return resolved

    async def check_availability(self, invoice_id: str) -> Availability:
        """Tagged availability result; configuration failures are reported, not raised."""
        owner_id: Optional[str] = None
        try:
            owner_id = await self.resolve_owner_for_invoice(invoice_id)
            resolved = await self.resolve_for_owner(owner_id)
        except ConfigurationError as e:
            return Availability(
                available=False,
                invoice_id=invoice_id,
                owner_id=owner_id,
                error=e.kind.value,
                message=e.message,
            )
        return Availability(
            available=True,
            invoice_id=invoice_id,
            owner_id=owner_id,
            source=resolved.source,
            processor_kind=resolved.processor_kind.value,
            shortcode=resolved.shortcode,
        )
