"""
SLIP-0010 hierarchical key derivation for ed25519 (hardened segments only).

Depends on: config, errors
"""

import hashlib
import hmac
from typing import Optional

from vibeagent.config import DERIVATION_PATH_PREFIX
from vibeagent.errors import ValidationError

HARDENED_OFFSET = 0x80000000
_MASTER_HMAC_KEY = b"ed25519 seed"


def parse_path(path: str) -> list[int]:
    """Parse "m/44'/501'/0'" into hardened child indexes."""
    parts = path.split("/")
    if not parts or parts[0] != "m":
        raise ValidationError(f"Invalid derivation path: {path!r}")
    indexes = []
    for segment in parts[1:]:
        if not segment.endswith("'"):
            raise ValidationError(f"Only hardened derivation is supported for ed25519: {path!r}")
        try:
            index = int(segment[:-1])
        except ValueError:
            raise ValidationError(f"Invalid derivation path segment {segment!r} in {path!r}") from None
        if not 0 <= index < HARDENED_OFFSET:
            raise ValidationError(f"Derivation index out of range in {path!r}")
        indexes.append(index + HARDENED_OFFSET)
    return indexes


def account_index_from_path(path: str) -> int:
    """Last segment of an identity path, e.g. m/44'/501'/0'/0'/3' -> 3."""
    if not path.startswith(DERIVATION_PATH_PREFIX + "/"):
        raise ValidationError(f"Unexpected identity derivation path: {path!r}")
    return parse_path(path)[-1] - HARDENED_OFFSET


class HDKey:
    """A node in the derivation tree. key and chain_code are wiped in place by wipe()."""

    def __init__(self, key: bytearray, chain_code: bytearray):
        self.key = key
        self.chain_code = chain_code

    @classmethod
    def from_master_seed(cls, seed: bytes) -> "HDKey":
        digest = hmac.new(_MASTER_HMAC_KEY, bytes(seed), hashlib.sha512).digest()
        return cls(bytearray(digest[:32]), bytearray(digest[32:]))

    def derive_child(self, index: int) -> "HDKey":
        if index < HARDENED_OFFSET:
            raise ValidationError("Only hardened derivation is supported for ed25519")
        data = b"\x00" + bytes(self.key) + index.to_bytes(4, "big")
        digest = hmac.new(bytes(self.chain_code), data, hashlib.sha512).digest()
        return HDKey(bytearray(digest[:32]), bytearray(digest[32:]))

    def derive(self, path: str) -> "HDKey":
        """Derive a descendant along a full path. Intermediate nodes are wiped."""
        node = self
        for index in parse_path(path):
            child = node.derive_child(index)
            if node is not self:
                node.wipe()
            node = child
        if node is self:
            return HDKey(bytearray(self.key), bytearray(self.chain_code))
        return node

    def wipe(self) -> None:
        for buf in (self.key, self.chain_code):
            for i in range(len(buf)):
                buf[i] = 0


def derive_private_key(master: HDKey, path: str) -> bytearray:
    """Return the 32-byte ed25519 seed at `path`. Caller owns (and wipes) the result."""
    node: Optional[HDKey] = None
    try:
        node = master.derive(path)
        return bytearray(node.key)
    finally:
        if node is not None:
            node.wipe()
