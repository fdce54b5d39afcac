"""Exception types raised by the payment engine.

Every error carries an ``ErrorKind`` so callers (the HTTP layer, the CLI,
the UI adapter) can branch on a closed set of values instead of parsing
messages.
"""

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    """Closed set of engine failure kinds."""
    # Configuration
    NOT_CONFIGURED = "not-configured"
    CONFIG_INACTIVE = "config-inactive"
    CREDENTIALS_NOT_VERIFIED = "credentials-not-verified"
    INVOICE_NOT_FOUND = "invoice-not-found"
    LEASE_NOT_FOUND = "lease-not-found"
    UNIT_NOT_FOUND = "unit-not-found"
    PROPERTY_NOT_FOUND = "property-not-found"
    OWNER_NOT_FOUND = "owner-not-found"
    # Input
    INVALID_PHONE = "invalid-phone"
    INVALID_AMOUNT = "invalid-amount"
    INVALID_CREDENTIALS = "invalid-credentials"
    INVOICE_ALREADY_PAID = "invoice-already-paid"
    # Session
    SESSION_EXPIRED = "session-expired"
    # Provider
    PROVIDER_REJECTED = "provider-rejected"
    # Vault
    ENCRYPTION_CONFIG_MISSING = "encryption-config-missing"
    ENCRYPTION_FAILED = "encryption-failed"
    DECRYPTION_FAILED = "decryption-failed"
    # Reconciliation
    TRANSACTION_NOT_FOUND = "transaction-not-found"
    UNSUPPORTED_PROVIDER = "unsupported-provider"
    VERIFICATION_UNAVAILABLE = "verification-unavailable"
    VERIFICATION_FAILED = "verification-failed"
    AMOUNT_MISMATCH = "amount-mismatch"


class StkPayError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.NOT_CONFIGURED

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(StkPayError):
    """No usable processor configuration for a payee."""
    kind = ErrorKind.NOT_CONFIGURED


class ReferenceChainError(ConfigurationError):
    """A link in invoice -> lease -> unit -> property -> owner is missing."""

    def __init__(self, kind: ErrorKind, entity_id: Optional[str]):
        entity = kind.value.replace("-not-found", "")
        super().__init__(
            f"{entity.capitalize()} not found: {entity_id}",
            kind=kind,
            details={"entity": entity, "id": entity_id},
        )


class InputError(StkPayError):
    """Caller-supplied input was rejected before any network call."""
    kind = ErrorKind.INVALID_AMOUNT


class InvalidPhoneError(InputError):
    kind = ErrorKind.INVALID_PHONE


class InvalidAmountError(InputError):
    kind = ErrorKind.INVALID_AMOUNT


class InvalidCredentialsError(InputError):
    kind = ErrorKind.INVALID_CREDENTIALS


class InvoiceAlreadyPaidError(InputError):
    kind = ErrorKind.INVOICE_ALREADY_PAID


class SessionExpiredError(StkPayError):
    kind = ErrorKind.SESSION_EXPIRED


class VaultError(StkPayError):
    """Encryption or decryption of stored credentials failed."""
    kind = ErrorKind.DECRYPTION_FAILED


class EncryptionConfigError(VaultError):
    kind = ErrorKind.ENCRYPTION_CONFIG_MISSING


class EncryptionError(VaultError):
    kind = ErrorKind.ENCRYPTION_FAILED


class DecryptionError(VaultError):
    kind = ErrorKind.DECRYPTION_FAILED


class TransactionNotFoundError(StkPayError):
    kind = ErrorKind.TRANSACTION_NOT_FOUND


class UnsupportedProviderError(StkPayError):
    kind = ErrorKind.UNSUPPORTED_PROVIDER


class VerificationError(StkPayError):
    kind = ErrorKind.VERIFICATION_FAILED


class VerificationUnavailableError(VerificationError):
    kind = ErrorKind.VERIFICATION_UNAVAILABLE


class AmountMismatchError(StkPayError):
    kind = ErrorKind.AMOUNT_MISMATCH


@dataclass(frozen=True)
class ProviderErrorInfo:
    """User-facing description of a provider failure."""
    error_id: str
    user_message: str
    required_action: Optional[str] = None
    should_retry: bool = True


PROVIDER_ERRORS: Dict[str, ProviderErrorInfo] = {
    "AUTH_INVALID_JWT": ProviderErrorInfo(
        "AUTH_INVALID_JWT",
        "Your session has expired.",
        "Please log in again to continue.",
        False,
    ),
    "AUTH_NOT_AUTHORIZED": ProviderErrorInfo(
        "AUTH_NOT_AUTHORIZED",
        "You are not authorized to pay this invoice.",
        "Please contact your landlord if you believe this is a mistake.",
        False,
    ),
    "AUTH_INVOICE_NOT_FOUND": ProviderErrorInfo(
        "AUTH_INVOICE_NOT_FOUND",
        "The invoice could not be found.",
        "Please refresh the page and try again.",
        True,
    ),
    "MPESA_CONFIG_MISSING": ProviderErrorInfo(
        "MPESA_CONFIG_MISSING",
        "M-Pesa payments are not set up for this property.",
        "Please contact your landlord to enable M-Pesa payments.",
        False,
    ),
    "MPESA_INVALID_ACCESS_TOKEN": ProviderErrorInfo(
        "MPESA_INVALID_ACCESS_TOKEN",
        "Could not authenticate with M-Pesa.",
        "Please try again in a moment.",
        True,
    ),
    "MPESA_TOKEN_FAILED": ProviderErrorInfo(
        "MPESA_TOKEN_FAILED",
        "Could not connect to M-Pesa.",
        "Please try again in a moment.",
        True,
    ),
    "MPESA_STK_FAILED": ProviderErrorInfo(
        "MPESA_STK_FAILED",
        "Failed to send payment request to your phone.",
        "Please check your phone number and try again.",
        True,
    ),
    "MPESA_ENCRYPTION_CONFIG_MISSING": ProviderErrorInfo(
        "MPESA_ENCRYPTION_CONFIG_MISSING",
        "Payment system configuration error.",
        "Please contact support.",
        False,
    ),
    "MPESA_DECRYPTION_FAILED": ProviderErrorInfo(
        "MPESA_DECRYPTION_FAILED",
        "Payment credentials could not be read.",
        "Please ask your landlord to re-enter their M-Pesa credentials.",
        False,
    ),
    "PROVIDER_TIMEOUT": ProviderErrorInfo(
        "PROVIDER_TIMEOUT",
        "The payment provider took too long to respond.",
        "Please try again.",
        True,
    ),
}

# Provider-side error codes that map onto a known error id
PROVIDER_CODE_ALIASES: Dict[str, str] = {
    "404.001.03": "MPESA_INVALID_ACCESS_TOKEN",
    "400.002.02": "MPESA_STK_FAILED",
    "500.001.1001": "MPESA_STK_FAILED",
}


def classify_provider_error(
    error_id: Optional[str],
    raw_message: Optional[str] = None,
) -> ProviderErrorInfo:
    """Map a provider error id or code onto a user-facing description.

    Unknown ids fall back to the raw provider message with a retry hint.
    """
    if error_id:
        error_id = PROVIDER_CODE_ALIASES.get(error_id, error_id)
        info = PROVIDER_ERRORS.get(error_id)
        if info is not None:
            return info
    return ProviderErrorInfo(
        error_id=error_id or "PROVIDER_ERROR",
        user_message=raw_message or "An unexpected error occurred with the payment provider.",
        required_action=None,
        should_retry=True,
    )


class ProviderError(StkPayError):
    """The provider rejected or failed a request."""
    kind = ErrorKind.PROVIDER_REJECTED

    def __init__(
        self,
        message: str,
        error_id: Optional[str] = None,
        status_code: Optional[int] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ):
        info = classify_provider_error(error_id, message)
        super().__init__(
            message,
            details={
                "error_id": info.error_id,
                "user_message": info.user_message,
                "required_action": info.required_action,
                "should_retry": info.should_retry,
            },
        )
        self.error_id = info.error_id
        self.user_message = info.user_message
        self.required_action = info.required_action
        self.should_retry = info.should_retry
        self.status_code = status_code
        self.raw_response = raw_response
