"""
did:vibe identifiers — multicodec-tagged, multibase (base58btc) Ed25519 public keys.

    did:vibe:z<base58btc(varint(0xed01) || raw_public_key)>

Depends on: config, errors
"""

from vibeagent.config import (
    DID_METHOD_PREFIX,
    ED25519_KEY_LENGTH,
    ED25519_MULTICODEC,
    MULTIBASE_BASE58BTC,
)
from vibeagent.errors import ValidationError


# =============================================================================
# Unsigned varint (multiformats)
# =============================================================================

def varint_encode(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def varint_decode(data: bytes) -> tuple[int, int]:
    """Decode a varint prefix. Returns (value, bytes_consumed)."""
    value = 0
    shift = 0
    for i, byte in enumerate(data[:9]):
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, i + 1
        shift += 7
    raise ValidationError("Failed to determine varint length during DID decoding.")


# =============================================================================
# Base58btc
# =============================================================================

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(_B58_ALPHABET)}


def b58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")
    result = []
    while num > 0:
        num, remainder = divmod(num, 58)
        result.append(_B58_ALPHABET[remainder])
    for byte in data:
        if byte == 0:
            result.append(_B58_ALPHABET[0])
        else:
            break
    return "".join(reversed(result))


def b58_decode(text: str) -> bytes:
    num = 0
    for ch in text:
        try:
            num = num * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValidationError(f"Invalid base58 character: {ch!r}") from None
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    leading = len(text) - len(text.lstrip(_B58_ALPHABET[0]))
    return b"\x00" * leading + body


# =============================================================================
# DID encode / decode
# =============================================================================

_CODEC_PREFIX = varint_encode(ED25519_MULTICODEC)


def encode_did(public_key: bytes) -> str:
    """Derive the did:vibe identifier for a raw 32-byte Ed25519 public key."""
    if len(public_key) != ED25519_KEY_LENGTH:
        raise ValidationError(
            f"Invalid public key length: expected {ED25519_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    return f"{DID_METHOD_PREFIX}{MULTIBASE_BASE58BTC}{b58_encode(_CODEC_PREFIX + bytes(public_key))}"


def decode_did(did: str) -> bytes:
    """Recover the raw 32-byte public key from a did:vibe identifier."""
    if not isinstance(did, str) or not did.startswith(DID_METHOD_PREFIX):
        raise ValidationError("Invalid DID format: must start with 'did:vibe:'")
    multibase = did[len(DID_METHOD_PREFIX):]
    if not multibase.startswith(MULTIBASE_BASE58BTC):
        raise ValidationError("Invalid DID format: expected base58btc multibase prefix 'z'")

    payload = b58_decode(multibase[1:])
    codec, consumed = varint_decode(payload)
    if codec != ED25519_MULTICODEC:
        raise ValidationError(f"Invalid DID codec: expected 0x{ED25519_MULTICODEC:x}, got 0x{codec:x}")

    public_key = payload[consumed:]
    if len(public_key) != ED25519_KEY_LENGTH:
        raise ValidationError(
            f"Invalid public key length: expected {ED25519_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    return public_key


def is_valid_did(did: str) -> bool:
    try:
        decode_did(did)
        return True
    except ValidationError:
        return False
