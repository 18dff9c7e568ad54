"""Domain services for decrypting Apple Pay payment tokens.

Pipeline per token:
1. Parse and validate the token (PaymentToken.parse)
2. Verify the detached signature, unless disabled
3. ECDH + KDF to derive the symmetric key
4. AES-256-GCM decrypt and parse the payment data

Each call is self-contained: no state is shared between calls beyond the
immutable merchant credentials.
"""

from collections.abc import Mapping
from typing import Any, Optional

import structlog

from applepay_token.config import Settings, get_settings
from applepay_token.domain.credentials import MerchantCredentials
from applepay_token.domain.token import PaymentToken

logger = structlog.get_logger(__name__)

TokenInput = str | bytes | Mapping[str, Any]


class TokenDecryptionService:
    """Domain service for decrypting tokens with one merchant's credentials.

    Holds parsed credentials so certificates and keys are not re-parsed for
    every token. Safe to share between threads.
    """

    def __init__(self, credentials: MerchantCredentials, verify_signature: bool = True):
        """
        Args:
            credentials: Parsed merchant certificate and private key
            verify_signature: Verify token signatures before decrypting
        """
        self.credentials = credentials
        self.verify_signature_enabled = verify_signature

    @classmethod
    def from_pem(
        cls,
        certificate_pem: str | bytes,
        private_key_pem: str | bytes,
        verify_signature: bool = True,
    ) -> "TokenDecryptionService":
        """Create a service from PEM-encoded credentials."""
        return cls(MerchantCredentials.from_pem(certificate_pem, private_key_pem), verify_signature)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TokenDecryptionService":
        """Create a service from APPLEPAY_* settings.

        Raises:
            ValueError: If credential paths are not configured
        """
        if settings is None:
            settings = get_settings()

        logger.info(
            "token_decryption_service_configured",
            verify_signature=settings.verify_signature,
        )
        return cls(
            MerchantCredentials.from_settings(settings),
            verify_signature=settings.verify_signature,
        )

    def decrypt(self, token_data: TokenInput) -> dict[str, Any]:
        """Parse, verify and decrypt a payment token.

        Raises:
            ParseError: If the token is not valid JSON
            ValidationError: If required token fields are missing
            SignatureVerificationError: If signature verification fails
            DecryptionError: If decryption fails
        """
        token = PaymentToken.parse(token_data)
        return token.decrypt_with_credentials(
            self.credentials, verify_signature=self.verify_signature_enabled
        )

    def verify_signature(self, token_data: TokenInput) -> bool:
        """Parse a token and verify its signature.

        Raises:
            ParseError, ValidationError, SignatureVerificationError
        """
        return PaymentToken.parse(token_data).verify_signature()


def decrypt(
    token_data: TokenInput,
    certificate_pem: str | bytes,
    private_key_pem: str | bytes,
    verify_signature: bool = True,
) -> dict[str, Any]:
    """Decrypt an Apple Pay payment token.

    Args:
        token_data: Token paymentData as JSON text or a mapping
        certificate_pem: Merchant certificate in PEM format
        private_key_pem: Merchant private key in PEM format
        verify_signature: Verify the token signature first (default True)

    Returns:
        Decrypted payment data

    Raises:
        ParseError: If the token is not valid JSON
        ValidationError: If required token fields are missing
        SignatureVerificationError: If signature verification fails
        DecryptionError: If decryption fails

    Example:
        >>> payment_data = decrypt(token_json, certificate_pem, private_key_pem)
        >>> payment_data["applicationPrimaryAccountNumber"]
        '4109370251004320'
    """
    token = PaymentToken.parse(token_data)
    return token.decrypt(certificate_pem, private_key_pem, verify_signature=verify_signature)


def verify_signature(token_data: TokenInput) -> bool:
    """Verify the signature of an Apple Pay payment token.

    Returns:
        True if the signature is valid

    Raises:
        ParseError, ValidationError, SignatureVerificationError
    """
    return PaymentToken.parse(token_data).verify_signature()
