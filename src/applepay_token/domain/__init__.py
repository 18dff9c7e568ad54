"""Apple Pay token decryption domain layer.

This package contains the token model, the cryptographic pipeline
(key agreement, AES-GCM decryption, signature verification) and the
services that compose them.
"""

from applepay_token.domain.credentials import MerchantCredentials
from applepay_token.domain.encryption import (
    EncryptedPayload,
    decrypt_payment_data,
    decrypt_with_key,
    split_encrypted_blob,
)
from applepay_token.domain.exceptions import (
    ApplePayDecryptionError,
    DecryptionError,
    ParseError,
    SignatureVerificationError,
    ValidationError,
)
from applepay_token.domain.key_agreement import (
    MerchantIdentifier,
    MerchantIdSource,
    derive_symmetric_key,
    kdf,
)
from applepay_token.domain.services import TokenDecryptionService, decrypt, verify_signature
from applepay_token.domain.signature import SignatureVerifier
from applepay_token.domain.token import PaymentToken, TokenHeader

__all__ = [
    # Token models
    "PaymentToken",
    "TokenHeader",
    "MerchantCredentials",
    # Exceptions
    "ApplePayDecryptionError",
    "ParseError",
    "ValidationError",
    "SignatureVerificationError",
    "DecryptionError",
    # Key agreement
    "MerchantIdentifier",
    "MerchantIdSource",
    "derive_symmetric_key",
    "kdf",
    # Encryption
    "EncryptedPayload",
    "split_encrypted_blob",
    "decrypt_with_key",
    "decrypt_payment_data",
    # Signature
    "SignatureVerifier",
    # Services
    "TokenDecryptionService",
    "decrypt",
    "verify_signature",
]
