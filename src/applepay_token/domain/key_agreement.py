"""ECDH key agreement and key derivation for EC_v1 payment tokens.

The symmetric key for a token is derived in three steps:

1. ECDH between the merchant private key and the token's ephemeral public
   key (both on P-256) produces a 32-byte shared secret.
2. The merchant identifier is read from the merchant certificate's
   Apple-specific extension (OID 1.2.840.113635.100.6.32).
3. A single-block concatenation KDF (SHA-256) over the
   shared secret and the fixed "other info" yields the 32-byte AES key.
"""

from enum import Enum
from typing import NamedTuple, Optional

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from applepay_token.domain.encoding import decode_base64
from applepay_token.domain.exceptions import DecryptionError

logger = structlog.get_logger(__name__)

MERCHANT_ID_OID = "1.2.840.113635.100.6.32"

# KDF inputs mandated by the EC_v1 scheme
KDF_COUNTER = b"\x00\x00\x00\x01"
KDF_ALGORITHM_ID = b"\x0did-aes256-GCM"
KDF_PARTY_U_INFO = b"Apple"

UNCOMPRESSED_POINT_LENGTH = 65
UNCOMPRESSED_POINT_TAG = 0x04

# DER tags for UTF8String, PrintableString and IA5String
_DER_STRING_TAGS = (0x0C, 0x13, 0x16)


class MerchantIdSource(str, Enum):
    """Where the KDF party V identifier came from."""

    CERTIFICATE = "certificate"
    TRANSACTION_ID = "transaction_id"


class MerchantIdentifier(NamedTuple):
    """Merchant identifier bytes and the source they were taken from.

    TRANSACTION_ID marks the degraded fallback used when the certificate
    cannot be parsed or lacks the merchant identifier extension.
    """

    value: bytes
    source: MerchantIdSource


def load_ephemeral_public_key(ephemeral_public_key: str) -> ec.EllipticCurvePublicKey:
    """Decode the token's ephemeral public key.

    Args:
        ephemeral_public_key: Base64-encoded uncompressed P-256 point

    Returns:
        P-256 public key

    Raises:
        DecryptionError: If the key is not valid base64 or not a valid
            uncompressed point on P-256
    """
    try:
        point = decode_base64(ephemeral_public_key, "ephemeralPublicKey")
    except ValueError as e:
        raise DecryptionError(f"Invalid ephemeral public key: {e}") from e

    if len(point) != UNCOMPRESSED_POINT_LENGTH or point[0] != UNCOMPRESSED_POINT_TAG:
        raise DecryptionError(
            "Invalid ephemeral public key: expected a 65-byte uncompressed point, "
            f"got {len(point)} bytes"
        )

    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), point)
    except ValueError as e:
        raise DecryptionError(f"Invalid ephemeral public key: {e}") from e


def load_merchant_private_key(private_key_pem: str | bytes) -> ec.EllipticCurvePrivateKey:
    """Load the merchant's P-256 private key from PEM.

    Raises:
        DecryptionError: If the PEM is invalid or not a P-256 EC key
    """
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode("utf-8")

    try:
        private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise DecryptionError(f"Invalid merchant private key: {e}") from e

    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise DecryptionError("Invalid merchant private key: not an elliptic curve key")

    if not isinstance(private_key.curve, ec.SECP256R1):
        raise DecryptionError(
            f"Invalid merchant private key: expected P-256, got {private_key.curve.name}"
        )

    return private_key


def load_merchant_certificate(certificate_pem: str | bytes) -> Optional[x509.Certificate]:
    """Parse the merchant certificate, or return None if it cannot be parsed.

    An unparsable certificate is not fatal: key derivation falls back to the
    transaction ID as merchant identifier.
    """
    if isinstance(certificate_pem, str):
        certificate_pem = certificate_pem.encode("utf-8")

    try:
        return x509.load_pem_x509_certificate(certificate_pem)
    except (ValueError, TypeError) as e:
        logger.warning("merchant_certificate_unparsable", error=str(e))
        return None


def compute_shared_secret(
    private_key: ec.EllipticCurvePrivateKey,
    public_key: ec.EllipticCurvePublicKey,
) -> bytes:
    """Compute the ECDH shared secret (x-coordinate, 32 bytes big-endian).

    Raises:
        DecryptionError: If key agreement fails
    """
    try:
        return private_key.exchange(ec.ECDH(), public_key)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise DecryptionError(f"ECDH key agreement failed: {e}") from e


def merchant_id_from_certificate(certificate: x509.Certificate) -> Optional[bytes]:
    """Extract the merchant identifier from the certificate extension.

    The extension value is hex text, usually wrapped in a DER UTF8String.

    Args:
        certificate: Merchant certificate

    Returns:
        Decoded merchant identifier, or None if the extension is absent

    Raises:
        DecryptionError: If the extension is present but is not hex text
    """
    try:
        extensions = list(certificate.extensions)
    except ValueError as e:
        logger.warning("merchant_certificate_extensions_unparsable", error=str(e))
        return None

    for extension in extensions:
        if extension.oid.dotted_string != MERCHANT_ID_OID:
            continue

        raw_value = extension.value.value
        hex_text = _unwrap_der_string(raw_value)
        try:
            return bytes.fromhex(hex_text.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError(f"Invalid merchant identifier extension: {e}") from e

    return None


def resolve_merchant_id(
    certificate: Optional[x509.Certificate], transaction_id: str
) -> MerchantIdentifier:
    """Pick the KDF party V identifier for a token.

    Uses the certificate extension when available, otherwise the decoded
    transaction ID.

    Raises:
        DecryptionError: If the fallback transaction ID is not valid base64
    """
    if certificate is not None:
        merchant_id = merchant_id_from_certificate(certificate)
        if merchant_id is not None:
            return MerchantIdentifier(merchant_id, MerchantIdSource.CERTIFICATE)

    try:
        transaction_id_bytes = decode_base64(transaction_id, "transactionId")
    except ValueError as e:
        raise DecryptionError(f"Failed to extract merchant ID: {e}") from e

    logger.warning(
        "merchant_id_fallback_used",
        source=MerchantIdSource.TRANSACTION_ID.value,
        certificate_parsed=certificate is not None,
    )
    return MerchantIdentifier(transaction_id_bytes, MerchantIdSource.TRANSACTION_ID)


def kdf(shared_secret: bytes, merchant_id: bytes) -> bytes:
    """Derive the 32-byte AES-256 key from the shared secret.

    Computes:
        SHA256(00000001 || shared_secret || 0x0D "id-aes256-GCM" || "Apple" || merchant_id)

    This is a single output block of the concatenation KDF, which is all
    EC_v1 needs for a 256-bit key. The derivation is deterministic.

    Args:
        shared_secret: ECDH shared secret
        merchant_id: Party V identifier (see resolve_merchant_id)

    Returns:
        32-byte symmetric key
    """
    digest = hashes.Hash(hashes.SHA256())
    for part in (KDF_COUNTER, shared_secret, KDF_ALGORITHM_ID, KDF_PARTY_U_INFO, merchant_id):
        digest.update(part)
    return digest.finalize()


def derive_key(
    private_key: ec.EllipticCurvePrivateKey,
    ephemeral_public_key: str,
    certificate: Optional[x509.Certificate],
    transaction_id: str,
) -> bytes:
    """Derive the symmetric key from already-parsed merchant credentials.

    Args:
        private_key: Merchant P-256 private key
        ephemeral_public_key: Base64-encoded ephemeral public key from the token
        certificate: Merchant certificate, or None if it could not be parsed
        transaction_id: Base64-encoded transaction ID from the token

    Returns:
        32-byte symmetric key

    Raises:
        DecryptionError: If any step of the key agreement fails
    """
    public_key = load_ephemeral_public_key(ephemeral_public_key)
    shared_secret = compute_shared_secret(private_key, public_key)
    merchant_id = resolve_merchant_id(certificate, transaction_id)

    logger.debug(
        "symmetric_key_derived",
        merchant_id_source=merchant_id.source.value,
        shared_secret_length=len(shared_secret),
    )

    try:
        return kdf(shared_secret, merchant_id.value)
    finally:
        # Best-effort; Python gives no guarantee the buffer is cleared
        del shared_secret


def derive_symmetric_key(
    private_key_pem: str | bytes,
    ephemeral_public_key: str,
    certificate_pem: str | bytes,
    transaction_id: str,
) -> bytes:
    """Derive the symmetric key for a token from PEM-encoded credentials.

    Args:
        private_key_pem: Merchant private key in PEM format
        ephemeral_public_key: Base64-encoded ephemeral public key from the token
        certificate_pem: Merchant certificate in PEM format
        transaction_id: Base64-encoded transaction ID from the token

    Returns:
        32-byte symmetric key

    Raises:
        DecryptionError: If the keys are invalid or key agreement fails
    """
    private_key = load_merchant_private_key(private_key_pem)
    certificate = load_merchant_certificate(certificate_pem)

    return derive_key(private_key, ephemeral_public_key, certificate, transaction_id)


def _unwrap_der_string(value: bytes) -> bytes:
    """Strip a short-form DER string header, if present."""
    if len(value) >= 2 and value[0] in _DER_STRING_TAGS and value[1] == len(value) - 2:
        return value[2:]
    return value
