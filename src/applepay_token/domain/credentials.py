"""Merchant credentials used to decrypt payment tokens."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec

from applepay_token.config import Settings, get_settings
from applepay_token.domain.key_agreement import (
    derive_key,
    load_merchant_certificate,
    load_merchant_private_key,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MerchantCredentials:
    """Parsed merchant certificate and private key (Apple Pay Payment Processing).

    Parsing a certificate is comparatively expensive, so build this once and
    reuse it for every token. Instances are immutable and hold no per-token
    state, so they can be shared between threads.

    Attributes:
        private_key: Merchant P-256 private key
        certificate: Merchant certificate, or None if it could not be parsed
            (key derivation then falls back to the transaction ID)
    """

    private_key: ec.EllipticCurvePrivateKey
    certificate: Optional[x509.Certificate] = None

    @classmethod
    def from_pem(
        cls, certificate_pem: str | bytes, private_key_pem: str | bytes
    ) -> "MerchantCredentials":
        """Create credentials from PEM text.

        Raises:
            DecryptionError: If the private key is invalid
        """
        return cls(
            private_key=load_merchant_private_key(private_key_pem),
            certificate=load_merchant_certificate(certificate_pem),
        )

    @classmethod
    def from_files(
        cls, certificate_path: str | Path, private_key_path: str | Path
    ) -> "MerchantCredentials":
        """Create credentials from PEM files.

        Raises:
            OSError: If either file cannot be read
            DecryptionError: If the private key is invalid
        """
        certificate_pem = Path(certificate_path).read_bytes()
        private_key_pem = Path(private_key_path).read_bytes()

        logger.info(
            "merchant_credentials_loaded",
            certificate_path=str(certificate_path),
        )
        return cls.from_pem(certificate_pem, private_key_pem)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MerchantCredentials":
        """Create credentials from the configured file paths.

        Raises:
            ValueError: If a credential path is not configured
        """
        if settings is None:
            settings = get_settings()

        if settings.merchant_certificate_path is None:
            raise ValueError("merchant_certificate_path is not configured")
        if settings.merchant_private_key_path is None:
            raise ValueError("merchant_private_key_path is not configured")

        return cls.from_files(
            settings.merchant_certificate_path, settings.merchant_private_key_path
        )

    def derive_symmetric_key(self, ephemeral_public_key: str, transaction_id: str) -> bytes:
        """Derive the symmetric key for one token.

        Raises:
            DecryptionError: If key agreement fails
        """
        return derive_key(self.private_key, ephemeral_public_key, self.certificate, transaction_id)
