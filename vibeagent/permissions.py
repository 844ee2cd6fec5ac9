"""
Permission store — the persisted identity × origin × scope matrix.

    {identityDid: {origin: {"read:notes": "always", "write:notes": "ask"}}}

Depends on: config, errors, models, storage
"""

import sys
from typing import Optional

from vibeagent.config import STORAGE_KEY_PERMISSIONS
from vibeagent.errors import ValidationError
from vibeagent.models import PermissionSetting
from vibeagent.storage import Storage


def coerce_setting(value) -> PermissionSetting:
    try:
        return PermissionSetting(value)
    except ValueError:
        raise ValidationError(f"Invalid permission setting: {value!r}") from None


def validate_scope(scope: str) -> str:
    action, sep, collection = scope.partition(":")
    if not sep or not action or not collection:
        raise ValidationError(f"Invalid permission scope {scope!r}; expected 'action:collection'")
    return scope


class PermissionStore:
    """Every mutation is written through to storage immediately."""

    def __init__(self, storage: Storage):
        self._storage = storage
        self._matrix: dict[str, dict[str, dict[str, PermissionSetting]]] = self._load()

    def reload(self) -> None:
        """Re-read the matrix from storage (after the storage was cleared or replaced)."""
        self._matrix = self._load()

    def _load(self) -> dict:
        raw = self._storage.get(STORAGE_KEY_PERMISSIONS) or {}
        matrix: dict[str, dict[str, dict[str, PermissionSetting]]] = {}
        for did, origins in raw.items():
            for origin, scopes in (origins or {}).items():
                for scope, value in (scopes or {}).items():
                    try:
                        setting = PermissionSetting(value)
                    except ValueError:
                        print(f"[VibeAgent] Warning: dropping invalid permission {scope}={value!r} "
                              f"for {origin}", file=sys.stderr)
                        continue
                    matrix.setdefault(did, {}).setdefault(origin, {})[scope] = setting
        return matrix

    def _save(self) -> None:
        self._storage.set(STORAGE_KEY_PERMISSIONS, {
            did: {
                origin: {scope: setting.value for scope, setting in scopes.items()}
                for origin, scopes in origins.items()
            }
            for did, origins in self._matrix.items()
        })

    # =========================================================================
    # Single scope
    # =========================================================================

    def get_permission(self, did: str, origin: str, scope: str) -> Optional[PermissionSetting]:
        return self._matrix.get(did, {}).get(origin, {}).get(scope)

    def set_permission(self, did: str, origin: str, scope: str,
                       setting: "PermissionSetting | str") -> None:
        value = coerce_setting(setting)
        self._matrix.setdefault(did, {}).setdefault(origin, {})[validate_scope(scope)] = value
        self._save()

    # =========================================================================
    # Per origin / per identity
    # =========================================================================

    def get_origin_permissions(self, did: str, origin: str) -> dict[str, PermissionSetting]:
        return dict(self._matrix.get(did, {}).get(origin, {}))

    def set_origin_permissions(self, did: str, origin: str,
                               grants: dict[str, "PermissionSetting | str"]) -> None:
        """Replace the whole grant set for an origin."""
        validated = {validate_scope(scope): coerce_setting(value) for scope, value in grants.items()}
        self._matrix.setdefault(did, {})[origin] = validated
        self._save()

    def get_all_for_identity(self, did: str) -> dict[str, dict[str, PermissionSetting]]:
        return {origin: dict(scopes) for origin, scopes in self._matrix.get(did, {}).items()}

    def list_origins(self, did: str) -> list[str]:
        return sorted(self._matrix.get(did, {}))

    def revoke_origin_permissions(self, did: str, origin: str) -> bool:
        """Delete every grant an origin holds for an identity. Returns False if there were none."""
        origins = self._matrix.get(did)
        if not origins or origin not in origins:
            return False
        del origins[origin]
        if not origins:
            del self._matrix[did]
        self._save()
        print(f"[VibeAgent] Revoked all permissions for {origin}", file=sys.stderr)
        return True
