"""Detached PKCS7 signature verification for payment tokens.

The token signature is a CMS SignedData envelope whose signed content is
not embedded; it is reconstructed from the token fields as::

    ephemeralPublicKey || data || transactionId [|| applicationData]

Verification checks the envelope structure, the messageDigest signed
attribute and each signer's signature using the certificate carried in the
envelope. The signer certificate chain is NOT validated against the Apple
root CA; a production deployment must add that before relying on this
check for fraud prevention.
"""

import hmac
from typing import Optional

import structlog
from asn1crypto import cms, core
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from applepay_token.domain.encoding import decode_base64
from applepay_token.domain.exceptions import SignatureVerificationError

logger = structlog.get_logger(__name__)

DIGEST_ALGORITHMS: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# Signed attributes are signed as a SET OF, not with their [0] IMPLICIT tag
_DER_SET_TAG = b"\x31"


class SignatureVerifier:
    """
    Verifies the detached signature of a payment token.

    The verifier holds only the base64 token fields it was constructed with;
    each call to verify() decodes and checks them from scratch.
    """

    def __init__(
        self,
        signature: str,
        data: str,
        ephemeral_public_key: str,
        transaction_id: str,
        application_data: Optional[str] = None,
    ):
        """
        Initialize the verifier.

        Args:
            signature: Base64-encoded detached PKCS7 signature
            data: Base64-encoded encrypted payment data
            ephemeral_public_key: Base64-encoded ephemeral public key
            transaction_id: Base64-encoded transaction ID
            application_data: Base64-encoded application data hash, if present
        """
        self.signature = signature
        self.data = data
        self.ephemeral_public_key = ephemeral_public_key
        self.transaction_id = transaction_id
        self.application_data = application_data

    def verify(self) -> bool:
        """
        Verify the token signature.

        Returns:
            True if every signer's signature covers the token fields

        Raises:
            SignatureVerificationError: If decoding, parsing or verification fails
        """
        try:
            signed_data = self._load_signed_data()
            content = self.build_signed_content()
            signer_infos = self._signer_infos(signed_data)
            self._check_embedded_content(signed_data, content)

            certificates = _envelope_certificates(signed_data)
            for signer_info in signer_infos:
                self._verify_signer(signer_info, certificates, content)
        except SignatureVerificationError as e:
            logger.warning("payment_token_signature_rejected", error=str(e))
            raise
        except (ValueError, TypeError, KeyError, IndexError) as e:
            # asn1crypto parses lazily; malformed inner structures surface here
            logger.warning("payment_token_signature_rejected", error=str(e))
            raise SignatureVerificationError(f"Signature verification failed: {e}") from e

        logger.info("payment_token_signature_verified", signer_count=len(signer_infos))
        return True

    def verify_structure_only(self) -> bool:
        """
        Check that the signature is a well-formed envelope with signers.

        No signature math is performed. Useful when testing against
        sandbox tokens whose signed content cannot be reproduced.

        Raises:
            SignatureVerificationError: If the envelope is malformed or has no signers
        """
        try:
            self._signer_infos(self._load_signed_data())
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise SignatureVerificationError(
                f"Signature structure verification failed: {e}"
            ) from e
        return True

    def build_signed_content(self) -> bytes:
        """
        Reconstruct the bytes covered by the signature.

        Raises:
            SignatureVerificationError: If any field is not valid base64
        """
        parts = [
            self._decode(self.ephemeral_public_key, "ephemeralPublicKey"),
            self._decode(self.data, "data"),
            self._decode(self.transaction_id, "transactionId"),
        ]
        if self.application_data is not None:
            parts.append(self._decode(self.application_data, "applicationData"))

        return b"".join(parts)

    def _decode(self, value: str, field_name: str) -> bytes:
        try:
            return decode_base64(value, field_name)
        except ValueError as e:
            raise SignatureVerificationError(str(e)) from e

    def _load_signed_data(self) -> cms.SignedData:
        signature_der = self._decode(self.signature, "signature")

        try:
            content_info = cms.ContentInfo.load(signature_der, strict=True)
            content_type = content_info["content_type"].native
        except ValueError as e:
            raise SignatureVerificationError(f"Invalid PKCS7 signature structure: {e}") from e

        if content_type != "signed_data":
            raise SignatureVerificationError(
                f"Invalid PKCS7 signature structure: expected signed_data, got {content_type}"
            )

        return content_info["content"]

    def _signer_infos(self, signed_data: cms.SignedData) -> list[cms.SignerInfo]:
        signer_infos = list(signed_data["signer_infos"])
        if not signer_infos:
            raise SignatureVerificationError("No signers found in PKCS7 structure")
        return signer_infos

    def _check_embedded_content(self, signed_data: cms.SignedData, content: bytes) -> None:
        embedded = signed_data["encap_content_info"]["content"]
        if isinstance(embedded, core.Void):
            return

        if embedded.native != content:
            raise SignatureVerificationError(
                "Embedded PKCS7 content does not match the token fields"
            )

    def _verify_signer(
        self,
        signer_info: cms.SignerInfo,
        certificates: list[asn1_x509.Certificate],
        content: bytes,
    ) -> None:
        certificate = _find_signer_certificate(signer_info, certificates)

        digest_name = signer_info["digest_algorithm"]["algorithm"].native
        hash_class = DIGEST_ALGORITHMS.get(digest_name)
        if hash_class is None:
            raise SignatureVerificationError(f"Unsupported digest algorithm: {digest_name}")

        signed_bytes = _signed_bytes(signer_info, content, hash_class)
        signature = signer_info["signature"].native

        try:
            public_key = x509.load_der_x509_certificate(certificate.dump()).public_key()
        except (ValueError, UnsupportedAlgorithm) as e:
            raise SignatureVerificationError(f"Invalid signer certificate: {e}") from e

        try:
            if isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, signed_bytes, ec.ECDSA(hash_class()))
            elif isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_class())
            else:
                raise SignatureVerificationError(
                    f"Unsupported signer key type: {type(public_key).__name__}"
                )
        except InvalidSignature as e:
            raise SignatureVerificationError("Signature does not match the token data") from e

        logger.debug(
            "payment_token_signer_verified",
            signer_subject=certificate.subject.human_friendly,
            digest_algorithm=digest_name,
        )


def _envelope_certificates(signed_data: cms.SignedData) -> list[asn1_x509.Certificate]:
    certificate_set = signed_data["certificates"]
    if isinstance(certificate_set, core.Void):
        return []

    return [choice.chosen for choice in certificate_set if choice.name == "certificate"]


def _find_signer_certificate(
    signer_info: cms.SignerInfo, certificates: list[asn1_x509.Certificate]
) -> asn1_x509.Certificate:
    """Match a signer info to its certificate by issuer/serial or key identifier."""
    sid = signer_info["sid"]

    for certificate in certificates:
        if sid.name == "issuer_and_serial_number":
            issuer_and_serial = sid.chosen
            if (
                certificate.issuer == issuer_and_serial["issuer"]
                and certificate.serial_number == issuer_and_serial["serial_number"].native
            ):
                return certificate
        elif sid.name == "subject_key_identifier":
            if certificate.key_identifier == sid.chosen.native:
                return certificate

    raise SignatureVerificationError("Signer certificate not found in PKCS7 structure")


def _signed_bytes(
    signer_info: cms.SignerInfo,
    content: bytes,
    hash_class: type[hashes.HashAlgorithm],
) -> bytes:
    """Return the exact bytes the signer signed.

    With signed attributes, the signature covers their DER encoding and the
    messageDigest attribute must match the digest of the content.
    """
    signed_attrs = signer_info["signed_attrs"]
    if isinstance(signed_attrs, core.Void) or len(signed_attrs) == 0:
        return content

    message_digest = None
    for attribute in signed_attrs:
        if attribute["type"].native == "message_digest":
            values = attribute["values"]
            if len(values) != 1:
                raise SignatureVerificationError("Invalid messageDigest attribute")
            message_digest = values[0].native

    if message_digest is None:
        raise SignatureVerificationError("Signed attributes are missing the message digest")

    digest = hashes.Hash(hash_class())
    digest.update(content)
    if not hmac.compare_digest(message_digest, digest.finalize()):
        raise SignatureVerificationError("Message digest does not match the token data")

    return _DER_SET_TAG + signed_attrs.dump()[1:]
