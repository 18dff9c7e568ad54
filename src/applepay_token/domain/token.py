"""Domain model for Apple Pay payment tokens.

This module parses and validates the PKPaymentToken ``paymentData``
structure. The model owns no cryptography; decrypt() and
verify_signature() delegate to the key agreement, encryption and
signature modules with the token's own fields.

See: https://developer.apple.com/documentation/passkit/apple_pay/payment_token_format_reference
"""

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from applepay_token.domain.credentials import MerchantCredentials
from applepay_token.domain.encryption import decode_encrypted_data, decrypt_blob
from applepay_token.domain.exceptions import ParseError, ValidationError
from applepay_token.domain.key_agreement import derive_symmetric_key
from applepay_token.domain.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

SUPPORTED_VERSION = "EC_v1"

REQUIRED_FIELDS = ("data", "signature", "version", "header")
REQUIRED_HEADER_FIELDS = ("ephemeralPublicKey", "publicKeyHash", "transactionId")


@dataclass(frozen=True)
class TokenHeader:
    """Token header fields, kept base64-encoded as received.

    Attributes:
        ephemeral_public_key: Uncompressed P-256 point generated by the device
        public_key_hash: Hash of the merchant public key (informational, not checked)
        transaction_id: Transaction identifier generated on the device
        application_data: Hash of the payment request's application data, if any
    """

    ephemeral_public_key: str
    public_key_hash: str
    transaction_id: str
    application_data: Optional[str] = None


@dataclass(frozen=True)
class PaymentToken:
    """Apple Pay payment token (EC_v1).

    Build instances with PaymentToken.parse(); the token is immutable once
    parsed.

    Attributes:
        data: Base64-encoded encrypted payment data (IV || ciphertext || tag)
        signature: Base64-encoded detached PKCS7 signature
        version: Token format version, always "EC_v1"
        header: Parsed header fields
    """

    data: str
    signature: str
    version: str
    header: TokenHeader
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def parse(cls, token_data: str | bytes | Mapping[str, Any]) -> "PaymentToken":
        """Parse a payment token from JSON text or a mapping.

        Args:
            token_data: Token as JSON text (str or UTF-8 bytes) or a mapping

        Returns:
            PaymentToken instance

        Raises:
            ParseError: If the input is not valid JSON or of an unsupported kind
            ValidationError: If required fields are missing or invalid
        """
        token_dict = _load_token_dict(token_data)
        _validate_structure(token_dict)

        header = token_dict["header"]
        token = cls(
            data=token_dict["data"],
            signature=token_dict["signature"],
            version=token_dict["version"],
            header=TokenHeader(
                ephemeral_public_key=header["ephemeralPublicKey"],
                public_key_hash=header["publicKeyHash"],
                transaction_id=header["transactionId"],
                application_data=header.get("applicationData"),
            ),
            raw=copy.deepcopy(token_dict),
        )

        logger.debug("payment_token_parsed", transaction_id=token.header.transaction_id)
        return token

    def to_dict(self) -> dict[str, Any]:
        """Return a copy of the token exactly as it was received."""
        return copy.deepcopy(self.raw)

    def verify_signature(self) -> bool:
        """Verify the token's detached signature.

        Returns:
            True if the signature is valid

        Raises:
            SignatureVerificationError: If verification fails
        """
        verifier = SignatureVerifier(
            signature=self.signature,
            data=self.data,
            ephemeral_public_key=self.header.ephemeral_public_key,
            transaction_id=self.header.transaction_id,
            application_data=self.header.application_data,
        )
        return verifier.verify()

    def decrypt(
        self,
        certificate_pem: str | bytes,
        private_key_pem: str | bytes,
        verify_signature: bool = True,
    ) -> dict[str, Any]:
        """Decrypt the token with PEM-encoded merchant credentials.

        Args:
            certificate_pem: Merchant certificate in PEM format
            private_key_pem: Merchant private key in PEM format
            verify_signature: Verify the signature before decrypting (default True)

        Returns:
            Decrypted payment data

        Raises:
            SignatureVerificationError: If verification is enabled and fails
            DecryptionError: If decryption fails
        """
        if verify_signature:
            self.verify_signature()

        encrypted_blob = decode_encrypted_data(self.data)
        symmetric_key = derive_symmetric_key(
            private_key_pem,
            self.header.ephemeral_public_key,
            certificate_pem,
            self.header.transaction_id,
        )
        return self._open(symmetric_key, encrypted_blob)

    def decrypt_with_credentials(
        self, credentials: MerchantCredentials, verify_signature: bool = True
    ) -> dict[str, Any]:
        """Decrypt the token with pre-parsed merchant credentials.

        Raises:
            SignatureVerificationError: If verification is enabled and fails
            DecryptionError: If decryption fails
        """
        if verify_signature:
            self.verify_signature()

        encrypted_blob = decode_encrypted_data(self.data)
        symmetric_key = credentials.derive_symmetric_key(
            self.header.ephemeral_public_key, self.header.transaction_id
        )
        return self._open(symmetric_key, encrypted_blob)

    def _open(self, symmetric_key: bytes, encrypted_blob: bytes) -> dict[str, Any]:
        try:
            payment_data = decrypt_blob(symmetric_key, encrypted_blob)
        finally:
            # Best-effort; Python gives no guarantee the buffer is cleared
            del symmetric_key

        logger.info("payment_token_decrypted", transaction_id=self.header.transaction_id)
        return payment_data


def _load_token_dict(token_data: Any) -> dict[str, Any]:
    if isinstance(token_data, (bytes, bytearray)):
        try:
            token_data = token_data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e

    if isinstance(token_data, str):
        try:
            token_data = json.loads(token_data)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e

        if not isinstance(token_data, dict):
            raise ParseError(f"Token JSON must be an object, got {type(token_data).__name__}")
        return token_data

    if isinstance(token_data, Mapping):
        return dict(token_data)

    raise ParseError(
        f"Token must be a JSON string or mapping, got {type(token_data).__name__}"
    )


def _validate_structure(token_dict: dict[str, Any]) -> None:
    missing_fields = [name for name in REQUIRED_FIELDS if token_dict.get(name) is None]
    if missing_fields:
        raise ValidationError(f"Missing required fields: {', '.join(missing_fields)}")

    header = token_dict["header"]
    if not isinstance(header, Mapping):
        raise ValidationError("Header must be a JSON object")

    missing_header_fields = [
        name for name in REQUIRED_HEADER_FIELDS if header.get(name) is None
    ]
    if missing_header_fields:
        raise ValidationError(
            f"Missing required header fields: {', '.join(missing_header_fields)}"
        )

    if token_dict["version"] != SUPPORTED_VERSION:
        raise ValidationError(
            f"Unsupported token version: {token_dict['version']!r} (expected {SUPPORTED_VERSION})"
        )
