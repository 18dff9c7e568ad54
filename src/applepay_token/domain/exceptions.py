"""Custom exceptions for Apple Pay token decryption."""


class ApplePayDecryptionError(Exception):
    """Base exception for all token decryption errors."""

    pass


class ParseError(ApplePayDecryptionError):
    """
    Raised when the token input is not well-formed JSON or is of an
    unsupported input kind.

    Always raised before any structural validation runs.
    """

    pass


class ValidationError(ApplePayDecryptionError):
    """
    Raised when a parsed token is missing required fields.

    The message lists every missing field, not only the first one found.
    """

    pass


class SignatureVerificationError(ApplePayDecryptionError):
    """
    Raised when the detached PKCS7 signature cannot be decoded, parsed
    or verified.

    Callers should treat this as a security event: the token may have been
    tampered with.
    """

    pass


class DecryptionError(ApplePayDecryptionError):
    """
    Raised when any step of the decryption pipeline fails.

    Examples:
    - Invalid base64 in the encrypted payload
    - Invalid ephemeral public key or merchant private key
    - AES-GCM authentication failure (tampered data or wrong key)
    - Decrypted plaintext is not a JSON object
    """

    pass
