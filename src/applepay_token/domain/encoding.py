"""Byte decoding helpers shared by the decryption pipeline."""

import base64


def decode_base64(value: str, field_name: str) -> bytes:
    """Strictly decode a base64 token field.

    Args:
        value: Base64-encoded text from the token
        field_name: Token field name, used in error messages

    Returns:
        Decoded bytes

    Raises:
        ValueError: If value is not a string or is not valid base64
    """
    if not isinstance(value, (str, bytes)):
        raise ValueError(f"{field_name} must be a base64 string, got {type(value).__name__}")

    try:
        return base64.b64decode(value, validate=True)
    # binascii.Error, and ValueError for non-ASCII text
    except ValueError as e:
        raise ValueError(f"Invalid base64 encoding for {field_name}: {e}") from e
