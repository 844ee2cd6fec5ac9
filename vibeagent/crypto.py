"""
Crypto primitives — Ed25519 keys and signatures, BIP39 mnemonics,
PBKDF2 key derivation, AES-GCM encryption, and in-place wiping.

Depends on: config, errors, models
"""

import base64
import os
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from mnemonic import Mnemonic

from vibeagent.config import (
    ENCRYPTION_KEY_LENGTH,
    IV_LENGTH,
    MNEMONIC_LANGUAGE,
    MNEMONIC_STRENGTH,
    PBKDF2_ITERATIONS,
    SALT_LENGTH,
)
from vibeagent.errors import ValidationError
from vibeagent.models import EncryptedData

Buffer = Union[bytes, bytearray]


# =============================================================================
# Ed25519 Keypair
# =============================================================================

def public_key_for(private_key: Buffer) -> bytes:
    """Raw 32-byte Ed25519 public key for a 32-byte private seed."""
    if len(private_key) != 32:
        raise ValidationError(f"Ed25519 private key must be 32 bytes, got {len(private_key)}")
    key = Ed25519PrivateKey.from_private_bytes(bytes(private_key))
    return key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def sign(private_key: Buffer, message: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(bytes(private_key)).sign(message)


def verify(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Verify an Ed25519 signature. Returns True if valid."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def sign_claim_code(private_key: Buffer, claim_code: str) -> str:
    """Base64 Ed25519 signature over a UTF-8 claim code."""
    return base64.b64encode(sign(private_key, claim_code.encode("utf-8"))).decode("ascii")


# =============================================================================
# Mnemonic (BIP39)
# =============================================================================

_mnemo = Mnemonic(MNEMONIC_LANGUAGE)


def generate_mnemonic() -> str:
    return _mnemo.generate(strength=MNEMONIC_STRENGTH)


def normalize_mnemonic(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())


def validate_mnemonic(phrase: str) -> bool:
    try:
        return _mnemo.check(normalize_mnemonic(phrase))
    except (ValueError, LookupError):
        return False


def mnemonic_to_seed(phrase: str) -> bytearray:
    """64-byte BIP39 seed, empty passphrase."""
    return bytearray(Mnemonic.to_seed(normalize_mnemonic(phrase), passphrase=""))


# =============================================================================
# Password-based encryption
# =============================================================================

def generate_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def derive_encryption_key(password: str, salt: bytes,
                          iterations: int = PBKDF2_ITERATIONS) -> bytearray:
    """PBKDF2-HMAC-SHA256 -> 32-byte AES key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=ENCRYPTION_KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(password.encode("utf-8")))


def encrypt(key: Buffer, plaintext: str) -> EncryptedData:
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(bytes(key)).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedData(iv=iv.hex(), ciphertext=ciphertext.hex())


def decrypt(key: Buffer, data: EncryptedData) -> str:
    """Decrypt AES-GCM data. Raises InvalidTag on a wrong key or tampered ciphertext."""
    iv = bytes.fromhex(data.iv)
    ciphertext = bytes.fromhex(data.ciphertext)
    return AESGCM(bytes(key)).decrypt(iv, ciphertext, None).decode("utf-8")


# =============================================================================
# Memory hygiene
# =============================================================================

def wipe(*buffers) -> None:
    """Zero-fill bytearrays in place. None and immutable values are skipped."""
    for buf in buffers:
        if isinstance(buf, bytearray):
            for i in range(len(buf)):
                buf[i] = 0
