"""
Data models — pure data classes with no business logic.

Depends on: config
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from vibeagent.config import DERIVATION_PATH_PREFIX


# =============================================================================
# Enums
# =============================================================================

class PermissionSetting(str, Enum):
    ALWAYS = "always"
    ASK = "ask"
    NEVER = "never"


class ActionType(str, Enum):
    READ = "read"
    WRITE = "write"


class Scenario(str, Enum):
    """Registration scenario for an app manifest against existing grants."""
    NEW = "new"              # No grants for this origin yet
    UPDATE = "update"        # Manifest asks for scopes outside the existing grants
    NO_CHANGE = "no_change"  # Manifest scopes are a subset of existing grants


class TransportState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


def make_scope(action: "ActionType | str", collection: str) -> str:
    """Scope string for an action on a collection, e.g. 'read:notes'."""
    action_value = action.value if isinstance(action, ActionType) else action
    return f"{action_value}:{collection}"


def derivation_path_for(index: int) -> str:
    return f"{DERIVATION_PATH_PREFIX}/{index}'"


# =============================================================================
# Vault
# =============================================================================

@dataclass
class EncryptedData:
    """AES-GCM output, both fields hex encoded."""
    iv: str
    ciphertext: str


@dataclass
class VaultIdentity:
    """Persisted identity metadata. Contains no key material."""
    did: str
    derivation_path: str
    profile_name: str
    profile_picture: Optional[str] = None


@dataclass
class VaultRecord:
    """The persisted vault. Only the seed phrase is encrypted."""
    encrypted_seed_phrase: EncryptedData
    identities: list[VaultIdentity] = field(default_factory=list)
    next_account_index: int = 0


# =============================================================================
# Identity
# =============================================================================

@dataclass
class Identity:
    """A materialized identity. Keys are present only while the vault is unlocked."""
    did: str
    label: str
    picture_url: Optional[str] = None
    derivation_path: Optional[str] = None
    public_key: Optional[bytes] = field(default=None, repr=False)
    # Ephemeral: wiped on lock, never persisted
    private_key: Optional[bytearray] = field(default=None, repr=False)

    @property
    def has_keys(self) -> bool:
        return self.private_key is not None

    def public_view(self) -> "Identity":
        """Projection safe to hand out when locked or to embedded apps."""
        return Identity(did=self.did, label=self.label, picture_url=self.picture_url)


# =============================================================================
# Apps, Consent & Actions
# =============================================================================

@dataclass
class AppManifest:
    app_id: str
    name: str
    permissions: list[str] = field(default_factory=list)
    description: Optional[str] = None
    picture_url: Optional[str] = None


@dataclass
class AppInfo:
    """Requesting app as shown in an action confirmation."""
    name: str
    picture_url: Optional[str] = None


@dataclass
class ConsentRequest:
    manifest: AppManifest
    origin: str
    requested_permissions: list[str]
    existing_permissions: dict[str, PermissionSetting] = field(default_factory=dict)
    new_permissions: Optional[list[str]] = None


@dataclass
class ActionRequest:
    action: ActionType
    origin: str
    collection: str
    identity: Identity
    app: AppInfo
    payload: Any = None
    preview: Any = None  # Redacted copy of payload for display

    @property
    def scope(self) -> str:
        return make_scope(self.action, self.collection)


@dataclass
class ActionResponse:
    allowed: bool
    remember_choice: bool = False


# =============================================================================
# Data Results
# =============================================================================

@dataclass
class ReadResult:
    ok: bool
    data: list[dict] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class WriteResult:
    ok: bool
    ids: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


@dataclass
class AppStatus:
    """Backend registration status for an app under the current identity."""
    is_registered: bool
    manifest: Optional[dict] = None
    grants: Optional[dict[str, str]] = None


# =============================================================================
# Session
# =============================================================================

@dataclass
class Account:
    user_did: str


@dataclass
class SessionState:
    """What an embedded app sees through its state-change listener."""
    account: Optional[Account] = None
    permissions: Optional[dict[str, PermissionSetting]] = None
    active_identity: Optional[Identity] = None
    identities: list[Identity] = field(default_factory=list)


@dataclass
class AppSession:
    """Everything the mediator needs to act for one app under one identity."""
    identity: Identity
    origin: str
    manifest: AppManifest
    token: str

    @property
    def app_info(self) -> AppInfo:
        return AppInfo(name=self.manifest.name, picture_url=self.manifest.picture_url)
