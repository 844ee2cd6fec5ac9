"""
Exception taxonomy for the agent core.

This is a leaf module with no internal dependencies.
"""

from typing import Optional


class VibeAgentError(Exception):
    """Base class for every error raised by the agent core."""


# =============================================================================
# Vault
# =============================================================================

class VaultExistsError(VibeAgentError):
    """A vault is already persisted; create/import refuses to overwrite it."""


class NoVaultError(VibeAgentError):
    """No vault has been created yet."""


class UnlockFailedError(VibeAgentError):
    """Wrong password or unreadable vault. The two cases are not distinguished."""

    def __init__(self, message: str = "Failed to unlock vault. Check your password."):
        super().__init__(message)


class VaultCorruptedError(VibeAgentError):
    """A re-derived DID did not match the stored one. Never surfaces past unlock()."""


class VaultLockedError(VibeAgentError):
    """The operation needs key material but the vault is locked."""


# =============================================================================
# Identities & Permissions
# =============================================================================

class IdentityNotFoundError(VibeAgentError):
    pass


class PermissionDeniedError(VibeAgentError):
    """A scope is set to 'never' or the user denied the action."""


class ConsentDeniedError(PermissionDeniedError):
    """The user declined the consent dialog for an app manifest."""


# =============================================================================
# UI Prompts
# =============================================================================

class UIHandlerMissingError(VibeAgentError):
    """The agent needed a prompt before the UI layer wired its handlers."""


class PromptTimeoutError(VibeAgentError):
    pass


# =============================================================================
# Session & Network
# =============================================================================

class NotInitializedError(VibeAgentError):
    """A data call was made before init() established a session."""


class NetworkError(VibeAgentError):
    """HTTP or WebSocket failure talking to the backend."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ValidationError(VibeAgentError):
    """Malformed DID, wrong key length, invalid mnemonic, or a payload that fails its schema."""
