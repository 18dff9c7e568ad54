"""Pytest configuration and shared fixtures for all tests.

This module provides shared test fixtures including:
- Merchant P-256 key and certificate carrying the merchant ID extension
- Signing key and certificate for detached PKCS7 signatures
- A token factory that builds real EC_v1 tokens (ECDH + KDF + AES-GCM)

The factory derives keys with its own hashlib implementation so tests do
not rely on the code under test to build their inputs.
"""

import base64
import hashlib
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

MERCHANT_ID_OID = "1.2.840.113635.100.6.32"
MERCHANT_ID_HEX = hashlib.sha256(b"merchant.com.example.shop").hexdigest().upper()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def build_certificate(
    private_key: ec.EllipticCurvePrivateKey,
    common_name: str,
    extensions: tuple[x509.ExtensionType, ...] = (),
) -> x509.Certificate:
    """Build a self-signed certificate for tests."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
    )
    for extension in extensions:
        builder = builder.add_extension(extension, critical=False)

    return builder.sign(private_key, hashes.SHA256())


def sign_detached(
    content: bytes,
    certificate: x509.Certificate,
    private_key: ec.EllipticCurvePrivateKey,
    detached: bool = True,
) -> bytes:
    """Create a DER PKCS7 signature over content."""
    options = [pkcs7.PKCS7Options.Binary]
    if detached:
        options.append(pkcs7.PKCS7Options.DetachedSignature)

    return (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(content)
        .add_signer(certificate, private_key, hashes.SHA256())
        .sign(serialization.Encoding.DER, options)
    )


class TokenFactory:
    """Builds EC_v1 tokens encrypted for the test merchant."""

    def __init__(
        self,
        merchant_public_key: ec.EllipticCurvePublicKey,
        merchant_id: bytes,
        signing_certificate: x509.Certificate,
        signing_key: ec.EllipticCurvePrivateKey,
    ):
        self.merchant_public_key = merchant_public_key
        self.merchant_id = merchant_id
        self.signing_certificate = signing_certificate
        self.signing_key = signing_key

    @staticmethod
    def derive_key(shared_secret: bytes, merchant_id: bytes) -> bytes:
        return hashlib.sha256(
            b"\x00\x00\x00\x01" + shared_secret + b"\x0did-aes256-GCM" + b"Apple" + merchant_id
        ).digest()

    @staticmethod
    def encrypt(key: bytes, plaintext: bytes) -> bytes:
        iv = os.urandom(16)
        return iv + AESGCM(key).encrypt(iv, plaintext, None)

    def build(
        self,
        payment_data: Any,
        *,
        application_data: Optional[bytes] = None,
        use_transaction_id_as_merchant_id: bool = False,
        raw_plaintext: Optional[bytes] = None,
    ) -> dict[str, Any]:
        """Build a signed token dict for payment_data."""
        ephemeral_key = ec.generate_private_key(ec.SECP256R1())
        ephemeral_point = ephemeral_key.public_key().public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )
        transaction_id = os.urandom(32)

        shared_secret = ephemeral_key.exchange(ec.ECDH(), self.merchant_public_key)
        merchant_id = transaction_id if use_transaction_id_as_merchant_id else self.merchant_id
        key = self.derive_key(shared_secret, merchant_id)

        plaintext = raw_plaintext if raw_plaintext is not None else json.dumps(payment_data).encode()
        encrypted = self.encrypt(key, plaintext)

        signed_content = ephemeral_point + encrypted + transaction_id
        if application_data is not None:
            signed_content += application_data

        public_key_der = self.merchant_public_key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )

        header = {
            "ephemeralPublicKey": b64(ephemeral_point),
            "publicKeyHash": b64(hashlib.sha256(public_key_der).digest()),
            "transactionId": b64(transaction_id),
        }
        if application_data is not None:
            header["applicationData"] = b64(application_data)

        return {
            "data": b64(encrypted),
            "signature": b64(
                sign_detached(signed_content, self.signing_certificate, self.signing_key)
            ),
            "version": "EC_v1",
            "header": header,
        }

    def resign(self, token: dict[str, Any]) -> dict[str, Any]:
        """Recompute the signature after token fields were modified."""
        header = token["header"]
        signed_content = (
            base64.b64decode(header["ephemeralPublicKey"])
            + base64.b64decode(token["data"])
            + base64.b64decode(header["transactionId"])
        )
        if "applicationData" in header:
            signed_content += base64.b64decode(header["applicationData"])

        resigned = dict(token)
        resigned["signature"] = b64(
            sign_detached(signed_content, self.signing_certificate, self.signing_key)
        )
        return resigned


@pytest.fixture(autouse=True)
def reset_structlog():
    """Keep structlog configuration from leaking between tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture(scope="session")
def certificate_builder():
    """Expose build_certificate to tests that need custom extensions."""
    return build_certificate


@pytest.fixture(scope="session")
def merchant_id() -> bytes:
    """Merchant identifier encoded in the merchant certificate."""
    return bytes.fromhex(MERCHANT_ID_HEX)


@pytest.fixture(scope="session")
def merchant_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def merchant_private_key_pem(merchant_private_key) -> str:
    return merchant_private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def merchant_certificate(merchant_private_key) -> x509.Certificate:
    """Merchant certificate with the Apple merchant ID extension (DER UTF8String)."""
    merchant_id_value = b"\x0c\x40" + MERCHANT_ID_HEX.encode("ascii")
    extension = x509.UnrecognizedExtension(
        x509.ObjectIdentifier(MERCHANT_ID_OID), merchant_id_value
    )
    return build_certificate(merchant_private_key, "merchant.com.example.shop", (extension,))


@pytest.fixture(scope="session")
def merchant_certificate_pem(merchant_certificate) -> str:
    return merchant_certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def plain_certificate_pem(merchant_private_key) -> str:
    """Merchant certificate without the merchant ID extension."""
    certificate = build_certificate(merchant_private_key, "no-merchant-id")
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def signing_certificate(signing_key) -> x509.Certificate:
    return build_certificate(signing_key, "Apple Pay Payment Processing Test Leaf")


@pytest.fixture(scope="session")
def pkcs7_signer(signing_certificate, signing_key):
    """Sign arbitrary content with the test signing certificate."""

    def sign(content: bytes, detached: bool = True) -> bytes:
        return sign_detached(content, signing_certificate, signing_key, detached=detached)

    return sign


@pytest.fixture(scope="session")
def token_factory(
    merchant_private_key, merchant_id, signing_certificate, signing_key
) -> TokenFactory:
    return TokenFactory(
        merchant_private_key.public_key(), merchant_id, signing_certificate, signing_key
    )


@pytest.fixture
def payment_data() -> dict[str, Any]:
    """Decrypted payment data as documented by Apple."""
    return {
        "applicationPrimaryAccountNumber": "4109370251004320",
        "applicationExpirationDate": "251231",
        "currencyCode": "840",
        "transactionAmount": 1000,
        "deviceManufacturerIdentifier": "040010030273",
        "paymentDataType": "3DSecure",
        "paymentData": {
            "onlinePaymentCryptogram": "Af9x/QwAA/DjmU65oyc1MAABAAA=",
            "eciIndicator": "5",
        },
    }


@pytest.fixture
def valid_token(token_factory, payment_data) -> dict[str, Any]:
    """A signed token encrypted for the test merchant."""
    return token_factory.build(payment_data)


@pytest.fixture
def placeholder_token() -> dict[str, Any]:
    """Structurally valid token whose fields are not real cryptographic values."""
    return {
        "data": "QklOQVJZREFUQQ==",
        "signature": "U0lHTkFUVVJF",
        "version": "EC_v1",
        "header": {
            "ephemeralPublicKey": "RVBIRU1FUkFMS0VZ",
            "publicKeyHash": "UFVCTEVZS0VZ",
            "transactionId": "VFJBTVNBQ1RJT04=",
        },
    }
