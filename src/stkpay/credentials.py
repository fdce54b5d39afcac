"""Owner credential administration and just-in-time decryption."""

import logging
from typing import Optional, Dict, Any, Mapping, Union

from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings, get_settings
from .connectors import ConnectorBase, ProviderCredentials
from .database import (
    ConfigPreference,
    PreferenceRepository,
    ProcessorConfig,
    ProcessorConfigRepository,
    ProcessorKind,
    ProviderKind,
)
from .errors import (
    ConfigurationError,
    ErrorKind,
    InputError,
    InvalidCredentialsError,
    UnsupportedProviderError,
)
from .resolver import ResolvedConfig
from .vault import CredentialVault

logger = logging.getLogger(__name__)

# Minimum lengths for submitted credential fields
MIN_LENGTHS: Dict[str, int] = {
    "consumer_key": 10,
    "consumer_secret": 10,
    "passkey": 20,
    "shortcode": 5,
    "client_id": 10,
    "client_secret": 10,
}

DARAJA_FIELDS = ("consumer_key", "consumer_secret", "passkey")
AGGREGATOR_FIELDS = ("client_id", "client_secret")

ENVIRONMENTS = ("sandbox", "production")

SecretInput = Union[str, SecretStr, None]


def _plain(value: SecretInput) -> Optional[str]:
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_credentials(processor_kind: ProcessorKind, fields: Mapping[str, Optional[str]]) -> None:
    """Check that every field the processor kind needs is present and long enough.

    Raises:
        InvalidCredentialsError: Listing the offending fields (never their values).
    """
    required = ("shortcode",) + (
        AGGREGATOR_FIELDS if processor_kind == ProcessorKind.TILL_AGGREGATOR else DARAJA_FIELDS
    )
    problems: Dict[str, str] = {}
    for name in required:
        value = fields.get(name)
        if not value:
            problems[name] = "required"
        elif len(value) < MIN_LENGTHS[name]:
            problems[name] = f"must be at least {MIN_LENGTHS[name]} characters"
    if problems:
        raise InvalidCredentialsError(
            "Invalid M-Pesa credentials: " + ", ".join(f"{k} {v}" for k, v in problems.items()),
            details={"fields": problems},
        )


class CredentialService:
    """Stores, verifies and decrypts owner processor credentials."""

    def __init__(
        self,
        session: AsyncSession,
        vault: CredentialVault,
        settings: Optional[Settings] = None,
        connectors: Optional[Mapping[ProviderKind, ConnectorBase]] = None,
    ):
        """Initialize the service.

        Args:
            session: AsyncSession instance for database operations.
            vault: Vault used to encrypt and decrypt secrets.
            settings: Engine settings; defaults to process settings.
            connectors: Provider connectors, needed only for verification.
        """
        self.session = session
        self.vault = vault
        self.settings = settings or get_settings()
        self.connectors = connectors or {}
        self.configs = ProcessorConfigRepository(session)
        self.preferences = PreferenceRepository(session)

    async def save_credentials(
        self,
        owner_id: str,
        processor_kind: Union[ProcessorKind, str],
        shortcode: str,
        consumer_key: SecretInput = None,
        consumer_secret: SecretInput = None,
        passkey: SecretInput = None,
        client_id: Optional[str] = None,
        client_secret: SecretInput = None,
        environment: str = "sandbox",
        display_name: Optional[str] = None,
        callback_url: Optional[str] = None,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        """Validate, encrypt and store an owner's credentials.

        Each secret is encrypted on its own; if any encryption fails nothing
        is written. Saved credentials start unverified and the owner's
        preference becomes ``custom``.

        Returns:
            Public view of the saved configuration (no secrets).
        """
        try:
            kind = ProcessorKind(processor_kind)
        except ValueError as e:
            raise InvalidCredentialsError(
                f"Unknown processor kind: {processor_kind}",
                details={"fields": {"processor_kind": "invalid"}},
            ) from e
        if environment not in ENVIRONMENTS:
            raise InvalidCredentialsError(
                f"environment must be one of: {', '.join(ENVIRONMENTS)}",
                details={"fields": {"environment": "invalid"}},
            )

        fields = {
            "shortcode": _plain(shortcode),
            "consumer_key": _plain(consumer_key),
            "consumer_secret": _plain(consumer_secret),
            "passkey": _plain(passkey),
            "client_id": _plain(client_id),
            "client_secret": _plain(client_secret),
        }
        validate_credentials(kind, fields)

        # Encrypt everything before touching the database
        if kind == ProcessorKind.TILL_AGGREGATOR:
            columns = {
                "client_id": fields["client_id"],
                "client_secret_encrypted": self.vault.encrypt(fields["client_secret"]),
                "consumer_key_encrypted": None,
                "consumer_secret_encrypted": None,
                "passkey_encrypted": None,
            }
        else:
            columns = {
                "consumer_key_encrypted": self.vault.encrypt(fields["consumer_key"]),
                "consumer_secret_encrypted": self.vault.encrypt(fields["consumer_secret"]),
                "passkey_encrypted": self.vault.encrypt(fields["passkey"]),
                "client_id": None,
                "client_secret_encrypted": None,
            }

        config = await self.configs.upsert(
            owner_id,
            processor_kind=kind.value,
            shortcode=fields["shortcode"],
            environment=environment,
            display_name=display_name,
            callback_url=callback_url,
            is_active=is_active,
            credentials_verified=False,
            verified_at=None,
            **columns,
        )
        await self.preferences.set(owner_id, ConfigPreference.CUSTOM)
        return config.to_dict()

    async def set_preference(
        self,
        owner_id: str,
        preference: Union[ConfigPreference, str],
    ) -> Dict[str, Any]:
        try:
            value = ConfigPreference(preference)
        except ValueError as e:
            raise InputError(
                f"Unknown payment preference: {preference}",
                kind=ErrorKind.INVALID_CREDENTIALS,
                details={"fields": {"preference": "invalid"}},
            ) from e
        pref = await self.preferences.set(owner_id, value)
        return {"owner_id": owner_id, "preference": pref.preference}

    def decrypt_config(self, config: ProcessorConfig) -> ProviderCredentials:
        """Decrypt an owner's stored configuration into a credentials holder."""
        return ProviderCredentials(
            provider=config.provider,
            processor_kind=config.kind,
            environment=config.environment,
            shortcode=config.shortcode,
            consumer_key=self.vault.decrypt_secret(config.consumer_key_encrypted),
            consumer_secret=self.vault.decrypt_secret(config.consumer_secret_encrypted),
            passkey=self.vault.decrypt_secret(config.passkey_encrypted),
            client_id=config.client_id,
            client_secret=self.vault.decrypt_secret(config.client_secret_encrypted),
        )

    def credentials_for(self, resolved: ResolvedConfig) -> ProviderCredentials:
        """Credentials for a resolved configuration, decrypted just in time."""
        if resolved.config is not None:
            return self.decrypt_config(resolved.config)

        platform = self.settings.platform_daraja
        if platform is None:
            raise ConfigurationError(
                "Platform M-Pesa credentials are not configured",
                kind=ErrorKind.NOT_CONFIGURED,
            )
        return ProviderCredentials(
            provider=ProviderKind.MPESA,
            processor_kind=ProcessorKind.PAYBILL,
            environment=platform.environment,
            shortcode=platform.shortcode,
            consumer_key=platform.consumer_key,
            consumer_secret=platform.consumer_secret,
            passkey=platform.passkey,
        )

    async def aggregator_credentials(self, owner_id: Optional[str]) -> ProviderCredentials:
        """Kopo Kopo credentials: the owner's active aggregator config, else the platform's."""
        if owner_id:
            config = await self.configs.get_active_for_owner(owner_id)
            if config is not None and config.kind == ProcessorKind.TILL_AGGREGATOR:
                return self.decrypt_config(config)

        platform = self.settings.platform_kopokopo
        if platform is None:
            raise ConfigurationError(
                "No Kopo Kopo credentials available for verification",
                kind=ErrorKind.NOT_CONFIGURED,
                details={"owner_id": owner_id},
            )
        return ProviderCredentials(
            provider=ProviderKind.KOPOKOPO,
            processor_kind=ProcessorKind.TILL_AGGREGATOR,
            environment=platform.environment,
            shortcode=platform.till_number or "",
            client_id=platform.client_id,
            client_secret=platform.client_secret,
        )

    async def verify_credentials(self, owner_id: str) -> Dict[str, Any]:
        """Prove stored credentials work by obtaining a provider access token.

        Raises:
            ConfigurationError: If the owner has no configuration.
            ProviderError: If the provider refuses the credentials.
        """
        config = await self.configs.get_for_owner(owner_id)
        if config is None:
            raise ConfigurationError(
                "No M-Pesa configuration to verify",
                kind=ErrorKind.NOT_CONFIGURED,
                details={"owner_id": owner_id},
            )
        connector = self.connectors.get(config.provider)
        if connector is None:
            raise UnsupportedProviderError(f"No connector for provider {config.provider.value}")

        credentials = self.decrypt_config(config)
        await connector.get_access_token(credentials)
        await self.configs.mark_verified(config)
        return config.to_dict()
