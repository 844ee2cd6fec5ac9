"""
Identity management — materialized identities and the active-identity selection.

Depends on: config, errors, models, storage, vault
"""

import sys
from typing import Optional

from vibeagent.config import STORAGE_KEY_ACTIVE_DID
from vibeagent.errors import IdentityNotFoundError, VaultLockedError
from vibeagent.models import Identity
from vibeagent.storage import Storage
from vibeagent.vault import Vault


class IdentityManager:
    """Tracks which unlocked identity acts on behalf of the user.

    The vault owns the key material; this class only references the
    identities the vault materialized, so a vault lock wipes them here too.
    """

    def __init__(self, vault: Vault, storage: Storage):
        self._vault = vault
        self._storage = storage
        self._active_did: Optional[str] = None

    def restore(self) -> Optional[Identity]:
        """Re-select the persisted active DID after unlock (falls back to the first identity)."""
        identities = self._vault.identities
        if not identities:
            self._active_did = None
            return None
        saved = self._storage.get(STORAGE_KEY_ACTIVE_DID)
        chosen = next((i for i in identities if i.did == saved), identities[0])
        self._active_did = chosen.did
        if chosen.did != saved:
            self._storage.set(STORAGE_KEY_ACTIVE_DID, chosen.did)
        return chosen

    def clear(self) -> None:
        """Forget the in-memory selection. The persisted choice survives for the next unlock."""
        self._active_did = None

    def get_identities(self) -> list[Identity]:
        """Full records while unlocked, public projections while locked."""
        if self._vault.is_locked:
            return self._vault.public_identities()
        return self._vault.identities

    def find_identity(self, did: str) -> Optional[Identity]:
        return next((i for i in self._vault.identities if i.did == did), None)

    def set_active_identity(self, did: str) -> Identity:
        if self._vault.is_locked:
            raise VaultLockedError("Vault must be unlocked to switch identities.")
        identity = self.find_identity(did)
        if identity is None:
            raise IdentityNotFoundError(f"Identity {did} is not materialized.")
        self._active_did = did
        self._storage.set(STORAGE_KEY_ACTIVE_DID, did)
        print(f"[VibeAgent] Active identity: {did}", file=sys.stderr)
        return identity

    def get_active_identity(self) -> Optional[Identity]:
        if self._vault.is_locked or self._active_did is None:
            return None
        return self.find_identity(self._active_did)
