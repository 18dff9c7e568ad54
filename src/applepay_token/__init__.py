"""Apple Pay payment token decryption.

Decrypts EC_v1 payment tokens with a merchant's Payment Processing
certificate and private key, optionally verifying the token signature.

Example:
    >>> import applepay_token
    >>> payment_data = applepay_token.decrypt(token_json, certificate_pem, private_key_pem)
"""

from applepay_token.domain import (
    ApplePayDecryptionError,
    DecryptionError,
    MerchantCredentials,
    ParseError,
    PaymentToken,
    SignatureVerificationError,
    TokenDecryptionService,
    ValidationError,
    decrypt,
    verify_signature,
)

__version__ = "0.1.0"

__all__ = [
    "decrypt",
    "verify_signature",
    "PaymentToken",
    "MerchantCredentials",
    "TokenDecryptionService",
    "ApplePayDecryptionError",
    "ParseError",
    "ValidationError",
    "SignatureVerificationError",
    "DecryptionError",
]
