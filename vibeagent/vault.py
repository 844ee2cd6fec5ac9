"""
Vault — the encrypted seed phrase plus identity metadata, and its lock/unlock lifecycle.

Persisted layout (storage keys):
    vault_salt  hex PBKDF2 salt (plaintext)
    vault       {"encryptedSeedPhrase": {"iv", "ciphertext"},
                 "identities": [{"did", "derivationPath", "profileName", "profilePicture"}],
                 "settings": {"nextAccountIndex"}}

Only the seed phrase is encrypted. Identity metadata stays readable while
locked so the UI can list identities before the password is entered.
Private keys are re-derived on every unlock and never written anywhere.

Depends on: config, errors, models, crypto, hdkey, did, storage
"""

import asyncio
import sys
from typing import Optional

from vibeagent.config import (
    PBKDF2_ITERATIONS,
    STORAGE_KEY_SALT,
    STORAGE_KEY_VAULT,
)
from vibeagent.crypto import (
    decrypt,
    derive_encryption_key,
    encrypt,
    generate_mnemonic,
    generate_salt,
    mnemonic_to_seed,
    normalize_mnemonic,
    public_key_for,
    validate_mnemonic,
    wipe,
)
from vibeagent.did import encode_did
from vibeagent.errors import (
    IdentityNotFoundError,
    NoVaultError,
    UnlockFailedError,
    ValidationError,
    VaultCorruptedError,
    VaultExistsError,
    VaultLockedError,
)
from vibeagent.hdkey import HDKey, account_index_from_path, derive_private_key
from vibeagent.models import (
    EncryptedData,
    Identity,
    VaultIdentity,
    VaultRecord,
    derivation_path_for,
)
from vibeagent.storage import Storage


# =============================================================================
# Record (de)serialization
# =============================================================================

def record_to_dict(record: VaultRecord) -> dict:
    return {
        "encryptedSeedPhrase": {
            "iv": record.encrypted_seed_phrase.iv,
            "ciphertext": record.encrypted_seed_phrase.ciphertext,
        },
        "identities": [
            {
                "did": vi.did,
                "derivationPath": vi.derivation_path,
                "profileName": vi.profile_name,
                "profilePicture": vi.profile_picture,
            }
            for vi in record.identities
        ],
        "settings": {"nextAccountIndex": record.next_account_index},
    }


def record_from_dict(data: dict) -> VaultRecord:
    esp = data["encryptedSeedPhrase"]
    identities = [
        VaultIdentity(
            did=vi["did"],
            derivation_path=vi["derivationPath"],
            profile_name=vi.get("profileName", ""),
            profile_picture=vi.get("profilePicture"),
        )
        for vi in data.get("identities", [])
    ]
    settings = data.get("settings", {})
    return VaultRecord(
        encrypted_seed_phrase=EncryptedData(iv=esp["iv"], ciphertext=esp["ciphertext"]),
        identities=identities,
        next_account_index=settings.get("nextAccountIndex", len(identities)),
    )


def default_label(index: int) -> str:
    return f"Identity {index + 1}"


def derive_identity(master: HDKey, path: str, label: str,
                    picture_url: Optional[str] = None) -> Identity:
    """Materialize the identity at `path`. The returned private key is owned by the caller."""
    private_key = derive_private_key(master, path)
    public_key = public_key_for(private_key)
    return Identity(
        did=encode_did(public_key),
        label=label,
        picture_url=picture_url,
        derivation_path=path,
        public_key=public_key,
        private_key=private_key,
    )


# =============================================================================
# Vault
# =============================================================================

class Vault:
    """Owns the master key and every materialized private key while unlocked."""

    def __init__(self, storage: Storage, kdf_iterations: int = PBKDF2_ITERATIONS):
        self._storage = storage
        self._iterations = kdf_iterations
        self._master: Optional[HDKey] = None
        self._identities: list[Identity] = []
        self._locked = True
        # Serializes create/import so only one vault can ever be written
        self._create_lock = asyncio.Lock()

    @property
    def is_locked(self) -> bool:
        return self._locked

    @property
    def identities(self) -> list[Identity]:
        """Materialized identities (with keys). Empty while locked."""
        return list(self._identities)

    def has_vault(self) -> bool:
        return self._storage.get(STORAGE_KEY_VAULT) is not None

    def load_record(self) -> VaultRecord:
        data = self._storage.get(STORAGE_KEY_VAULT)
        if data is None:
            raise NoVaultError("No vault found. Create or import one first.")
        return record_from_dict(data)

    def public_identities(self) -> list[Identity]:
        """Public projections read from the persisted metadata; available while locked."""
        if not self.has_vault():
            return []
        return [
            Identity(did=vi.did, label=vi.profile_name, picture_url=vi.profile_picture)
            for vi in self.load_record().identities
        ]

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(self, password: str, label: Optional[str] = None) -> str:
        """Create a new vault with one identity. Returns the 24-word recovery phrase."""
        async with self._create_lock:
            if self.has_vault():
                raise VaultExistsError("A vault already exists. Reset it before creating a new one.")
            mnemonic = generate_mnemonic()
            await self._initialize(mnemonic, password, label)
        print(f"[VibeAgent] Vault created with identity {self._identities[0].did}", file=sys.stderr)
        return mnemonic

    async def import_phrase(self, mnemonic: str, password: str,
                            label: Optional[str] = None) -> list[Identity]:
        """Create a vault from an existing recovery phrase."""
        if not validate_mnemonic(mnemonic):
            raise ValidationError("Invalid recovery phrase (checksum mismatch or unknown words).")
        async with self._create_lock:
            if self.has_vault():
                raise VaultExistsError("A vault already exists. Reset it before importing a phrase.")
            await self._initialize(normalize_mnemonic(mnemonic), password, label)
        print(f"[VibeAgent] Vault imported with identity {self._identities[0].did}", file=sys.stderr)
        return self.identities

    async def _initialize(self, mnemonic: str, password: str, label: Optional[str]) -> None:
        if not password:
            raise ValidationError("Password must not be empty.")

        salt = generate_salt()
        key = seed = None
        master: Optional[HDKey] = None
        identity: Optional[Identity] = None
        try:
            key = await asyncio.to_thread(derive_encryption_key, password, salt, self._iterations)
            seed = mnemonic_to_seed(mnemonic)
            master = HDKey.from_master_seed(seed)
            path = derivation_path_for(0)
            identity = derive_identity(master, path, label or default_label(0))
            record = VaultRecord(
                encrypted_seed_phrase=encrypt(key, mnemonic),
                identities=[VaultIdentity(
                    did=identity.did,
                    derivation_path=path,
                    profile_name=identity.label,
                )],
                next_account_index=1,
            )
            self._storage.set(STORAGE_KEY_SALT, salt.hex())
            self._storage.set(STORAGE_KEY_VAULT, record_to_dict(record))
        except Exception:
            if identity is not None:
                wipe(identity.private_key)
            if master is not None:
                master.wipe()
            self.lock()
            raise
        finally:
            wipe(key, seed)

        self.lock()
        self._master = master
        self._identities = [identity]
        self._locked = False

    # =========================================================================
    # Lock / Unlock
    # =========================================================================

    async def unlock(self, password: str) -> list[Identity]:
        """Decrypt the seed and re-derive every identity. Any failure leaves the vault locked."""
        if not self.has_vault():
            raise NoVaultError("No vault found. Create or import one first.")
        self.lock()

        key = seed = None
        master: Optional[HDKey] = None
        materialized: list[Identity] = []
        try:
            record = self.load_record()
            salt = bytes.fromhex(self._storage.get(STORAGE_KEY_SALT) or "")
            if not salt:
                raise VaultCorruptedError("Vault salt is missing.")
            key = await asyncio.to_thread(derive_encryption_key, password, salt, self._iterations)
            mnemonic = decrypt(key, record.encrypted_seed_phrase)
            seed = mnemonic_to_seed(mnemonic)
            master = HDKey.from_master_seed(seed)

            for vi in record.identities:
                if account_index_from_path(vi.derivation_path) >= record.next_account_index:
                    raise VaultCorruptedError(f"Identity index beyond nextAccountIndex: {vi.derivation_path}")
                identity = derive_identity(master, vi.derivation_path, vi.profile_name, vi.profile_picture)
                materialized.append(identity)
                if identity.did != vi.did:
                    raise VaultCorruptedError(f"Re-derived DID does not match stored DID {vi.did}")
        except Exception as e:
            for identity in materialized:
                wipe(identity.private_key)
            if master is not None:
                master.wipe()
            self.lock()
            print(f"[VibeAgent] Unlock failed ({type(e).__name__})", file=sys.stderr)
            raise UnlockFailedError() from None
        finally:
            wipe(key, seed)

        self._master = master
        self._identities = materialized
        self._locked = False
        print(f"[VibeAgent] Vault unlocked ({len(materialized)} identities)", file=sys.stderr)
        return self.identities

    def lock(self) -> None:
        """Wipe every private key and the master key. Safe to call repeatedly."""
        for identity in self._identities:
            wipe(identity.private_key)
            identity.private_key = None
        self._identities = []
        if self._master is not None:
            self._master.wipe()
            self._master = None
        self._locked = True

    # =========================================================================
    # Identities
    # =========================================================================

    def create_identity(self, label: Optional[str] = None,
                        picture_url: Optional[str] = None) -> Identity:
        """Derive the next identity, append it to the record, and persist."""
        if self._locked or self._master is None:
            raise VaultLockedError("Vault must be unlocked to create an identity.")
        record = self.load_record()
        index = record.next_account_index
        path = derivation_path_for(index)
        identity = derive_identity(self._master, path, label or default_label(index), picture_url)

        record.identities.append(VaultIdentity(
            did=identity.did,
            derivation_path=path,
            profile_name=identity.label,
            profile_picture=picture_url,
        ))
        record.next_account_index = index + 1
        self._storage.set(STORAGE_KEY_VAULT, record_to_dict(record))

        self._identities.append(identity)
        print(f"[VibeAgent] Identity created: {identity.did} ({path})", file=sys.stderr)
        return identity

    def update_profile(self, did: str, label: Optional[str] = None,
                       picture_url: Optional[str] = None) -> None:
        """Edit the stored label/picture of an identity. Works locked or unlocked."""
        record = self.load_record()
        entry = next((vi for vi in record.identities if vi.did == did), None)
        if entry is None:
            raise IdentityNotFoundError(f"Identity {did} not found in vault.")
        if label is not None:
            entry.profile_name = label
        if picture_url is not None:
            entry.profile_picture = picture_url
        self._storage.set(STORAGE_KEY_VAULT, record_to_dict(record))

        for identity in self._identities:
            if identity.did == did:
                identity.label = entry.profile_name
                identity.picture_url = entry.profile_picture

    def reset(self) -> None:
        """Wipe memory and delete the persisted vault and salt."""
        self.lock()
        self._storage.remove(STORAGE_KEY_VAULT)
        self._storage.remove(STORAGE_KEY_SALT)
        print("[VibeAgent] Vault reset", file=sys.stderr)
