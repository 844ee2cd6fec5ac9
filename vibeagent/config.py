"""
Configuration constants, environment variables, and defaults.

This is a leaf module with no internal dependencies.
"""

import os

# =============================================================================
# Backend
# =============================================================================

DEFAULT_CLOUD_URL = os.environ.get("VIBE_CLOUD_URL", "http://127.0.0.1:3001")
HTTP_TIMEOUT = float(os.environ.get("VIBE_HTTP_TIMEOUT", "30"))
APP_ID_HEADER = "X-Vibe-App-ID"

# Dev-mode identity claim. The backend issues a JWT to any DID that signs this code.
ADMIN_CLAIM_CODE = os.environ.get("VIBE_ADMIN_CLAIM_CODE", "ABC1-XYZ9")

# =============================================================================
# Persistence
# =============================================================================

AGENT_HOME = os.path.expanduser(os.environ.get("VIBE_AGENT_HOME", "~/.vibeagent"))
AGENT_NAMESPACE = os.environ.get("VIBE_AGENT_NAMESPACE", "vibe_agent")

STORAGE_KEY_VAULT = "vault"
STORAGE_KEY_SALT = "vault_salt"
STORAGE_KEY_PERMISSIONS = "permissions"
STORAGE_KEY_JWTS = "jwts"
STORAGE_KEY_ACTIVE_DID = "active_did"
STORAGE_KEY_CLOUD_URL = "cloud_url"
STORAGE_KEY_SETUP_COMPLETE = "setup_complete"

# =============================================================================
# Vault Crypto
# =============================================================================

PBKDF2_ITERATIONS = int(os.environ.get("VIBE_PBKDF2_ITERATIONS", "250000"))
SALT_LENGTH = 16
IV_LENGTH = 12              # AES-GCM nonce
ENCRYPTION_KEY_LENGTH = 32  # AES-256
MNEMONIC_STRENGTH = 256     # 24 words
MNEMONIC_LANGUAGE = "english"

# SLIP-0010 ed25519, every segment hardened. Identity N lives at PREFIX/N'.
DERIVATION_PATH_PREFIX = "m/44'/501'/0'/0'"

# =============================================================================
# DID
# =============================================================================

DID_METHOD_PREFIX = "did:vibe:"
MULTIBASE_BASE58BTC = "z"
ED25519_MULTICODEC = 0xED01
ED25519_KEY_LENGTH = 32

# =============================================================================
# Prompts
# =============================================================================

# Seconds to wait for the UI layer to answer a prompt. 0 disables the timeout.
PROMPT_TIMEOUT = float(os.environ.get("VIBE_PROMPT_TIMEOUT", "300"))
PROMPT_QUEUE_MAX = int(os.environ.get("VIBE_PROMPT_QUEUE_MAX", "16"))

# Action confirmation preview limits
PREVIEW_MAX_STRING = 200
PREVIEW_MAX_ITEMS = 20
PREVIEW_MAX_DEPTH = 4
PREVIEW_MASK = "***"
PREVIEW_SENSITIVE_KEYS = frozenset({
    "password",
    "passphrase",
    "secret",
    "token",
    "jwt",
    "apikey",
    "privatekey",
    "accesstoken",
    "mnemonic",
    "seed",
})

# =============================================================================
# Transport
# =============================================================================

# "refetch" re-reads the whole collection on each push; "merge" patches a local snapshot.
MERGE_POLICY = os.environ.get("VIBE_MERGE_POLICY", "refetch")
WS_PATH = "/ws"
WS_CONNECT_TIMEOUT = 10.0
