"""AES-256-GCM decryption of EC_v1 payment data.

The token's ``data`` field is a base64-encoded blob laid out as::

    IV (16 bytes) || ciphertext || authentication tag (16 bytes)

Decryption uses no additional authenticated data. Any authentication
failure aborts the call; no partial plaintext is ever returned.
"""

import json
from typing import Any, NamedTuple

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from applepay_token.domain.encoding import decode_base64
from applepay_token.domain.exceptions import DecryptionError

logger = structlog.get_logger(__name__)

GCM_IV_LENGTH = 16
GCM_TAG_LENGTH = 16
SYMMETRIC_KEY_LENGTH = 32


class EncryptedPayload(NamedTuple):
    """Encrypted payment data split at its fixed offsets."""

    iv: bytes
    ciphertext: bytes
    tag: bytes


def decode_encrypted_data(data: str) -> bytes:
    """Decode the token's base64 ``data`` field.

    Raises:
        DecryptionError: If data is not valid base64
    """
    try:
        return decode_base64(data, "data")
    except ValueError as e:
        logger.error("encrypted_data_decode_failed", error=str(e))
        raise DecryptionError(str(e)) from e


def split_encrypted_blob(blob: bytes) -> EncryptedPayload:
    """Split an encrypted blob into IV, ciphertext and tag.

    Raises:
        DecryptionError: If the blob is too short to hold an IV and a tag
    """
    minimum_length = GCM_IV_LENGTH + GCM_TAG_LENGTH
    if len(blob) < minimum_length:
        raise DecryptionError(
            f"AES decryption failed: encrypted data must be at least "
            f"{minimum_length} bytes, got {len(blob)}"
        )

    return EncryptedPayload(
        iv=blob[:GCM_IV_LENGTH],
        ciphertext=blob[GCM_IV_LENGTH:-GCM_TAG_LENGTH],
        tag=blob[-GCM_TAG_LENGTH:],
    )


def decrypt_with_key(payload: EncryptedPayload, key: bytes) -> bytes:
    """Decrypt and authenticate an AES-256-GCM payload.

    Args:
        payload: IV, ciphertext and tag
        key: 32-byte AES-256 key

    Returns:
        Plaintext bytes

    Raises:
        DecryptionError: If the key has the wrong length or authentication fails
    """
    if len(key) != SYMMETRIC_KEY_LENGTH:
        raise DecryptionError(
            f"Symmetric key must be {SYMMETRIC_KEY_LENGTH} bytes, got {len(key)}"
        )

    try:
        aesgcm = AESGCM(key)
        plaintext = aesgcm.decrypt(
            payload.iv, payload.ciphertext + payload.tag, associated_data=None
        )
    except InvalidTag as e:
        # Don't expose anything about the key or data
        logger.error("payment_data_authentication_failed")
        raise DecryptionError(
            "AES decryption failed: authentication tag mismatch (invalid key or corrupted data)"
        ) from e
    except ValueError as e:
        logger.error("payment_data_decryption_failed", error=str(e))
        raise DecryptionError(f"AES decryption failed: {e}") from e

    logger.debug(
        "payment_data_decrypted",
        ciphertext_length=len(payload.ciphertext),
        plaintext_length=len(plaintext),
    )
    return plaintext


def decrypt_blob(symmetric_key: bytes, blob: bytes) -> dict[str, Any]:
    """Decrypt an encrypted blob and parse the plaintext as a JSON object.

    Raises:
        DecryptionError: If decryption fails or the plaintext is not a JSON object
    """
    plaintext = decrypt_with_key(split_encrypted_blob(blob), symmetric_key)

    try:
        payment_data = json.loads(plaintext)
    except ValueError as e:
        # Also covers UnicodeDecodeError
        raise DecryptionError(f"Failed to parse decrypted data: {e}") from e
    finally:
        del plaintext

    if not isinstance(payment_data, dict):
        raise DecryptionError(
            f"Failed to parse decrypted data: expected a JSON object, "
            f"got {type(payment_data).__name__}"
        )

    return payment_data


def decrypt_payment_data(symmetric_key: bytes, data: str) -> dict[str, Any]:
    """Decrypt the token's base64 ``data`` field with a derived key.

    Args:
        symmetric_key: 32-byte key from the key agreement step
        data: Base64-encoded IV || ciphertext || tag

    Returns:
        Decrypted payment data, verbatim

    Raises:
        DecryptionError: If decoding, decryption or JSON parsing fails
    """
    return decrypt_blob(symmetric_key, decode_encrypted_data(data))
