"""
Address decoding — raw public-key bytes to canonical base58 text.

Wire values reach us in three shapes:
  * raw bytes straight from the protobuf message
  * {"type": "Buffer", "data": [..]} after a trip through the relay's JSON
  * text, already canonical
"""
import base58

from relay.constants import PUBKEY_LENGTH, SIGNATURE_LENGTH
from relay.errors import InvalidAddressLength, InvalidSignatureLength


def _as_bytes(value) -> bytes | None:
    """Return the raw bytes behind a wire value, or None for text."""
    if isinstance(value, str):
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, dict) and value.get("type") == "Buffer":
        return bytes(value.get("data", []))
    if isinstance(value, list):
        return bytes(value)
    raise TypeError(f"unsupported address value: {type(value).__name__}")


def decode_address(value) -> str:
    """Decode a 32-byte public key to base58. Text input is returned as-is."""
    raw = _as_bytes(value)
    if raw is None:
        return value
    if len(raw) != PUBKEY_LENGTH:
        raise InvalidAddressLength(len(raw))
    return base58.b58encode(raw).decode("ascii")


def encode_signature(value) -> str:
    """Decode a 64-byte transaction signature to base58."""
    raw = _as_bytes(value)
    if raw is None:
        return value
    if len(raw) != SIGNATURE_LENGTH:
        raise InvalidSignatureLength(len(raw))
    return base58.b58encode(raw).decode("ascii")


def address_bytes(address: str) -> bytes:
    raw = base58.b58decode(address)
    if len(raw) != PUBKEY_LENGTH:
        raise InvalidAddressLength(len(raw))
    return raw
