"""
Agent composition root.

AgentContext wires storage, vault, identities, permissions, prompts and the
backend client together and exposes the wallet-side operations (create,
unlock, switch identity, claim). It is constructed explicitly and passed to
whatever needs it.

AgentFacade is the per-origin surface an embedded application talks to:
init / read_once / read / write.

Depends on: everything (this is the composition root)
"""

import asyncio
import inspect
import sys
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from vibeagent.config import (
    ADMIN_CLAIM_CODE,
    DEFAULT_CLOUD_URL,
    MERGE_POLICY,
    PBKDF2_ITERATIONS,
    STORAGE_KEY_CLOUD_URL,
    STORAGE_KEY_JWTS,
    STORAGE_KEY_SETUP_COMPLETE,
)
from vibeagent.consent import ConsentCoordinator, classify_scenario
from vibeagent.crypto import sign_claim_code
from vibeagent.errors import (
    ConsentDeniedError,
    IdentityNotFoundError,
    NetworkError,
    NotInitializedError,
    VaultLockedError,
)
from vibeagent.identities import IdentityManager
from vibeagent.mediator import ActionMediator
from vibeagent.models import (
    Account,
    ActionType,
    AppManifest,
    AppSession,
    Identity,
    PermissionSetting,
    ReadResult,
    Scenario,
    SessionState,
    WriteResult,
    make_scope,
)
from vibeagent.network.http import CloudClient
from vibeagent.network.merge import make_merge_policy
from vibeagent.network.websocket import Connect, TransportMultiplexer, deliver
from vibeagent.permissions import PermissionStore
from vibeagent.prompts import PromptPort, UnwiredPrompts
from vibeagent.schemas import parse_manifest
from vibeagent.storage import JsonFileStorage, Storage
from vibeagent.vault import Vault

Unsubscribe = Callable[[], Awaitable[None]]
StateListener = Callable[[SessionState], Any]


async def _noop() -> None:
    return None


# =============================================================================
# Context
# =============================================================================

class AgentContext:
    """Everything one agent instance owns. One vault, at most one unlocked at a time."""

    def __init__(self, storage: Optional[Storage] = None,
                 prompts: Optional[PromptPort] = None,
                 cloud_url: Optional[str] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 ws_connect: Optional[Connect] = None,
                 kdf_iterations: int = PBKDF2_ITERATIONS,
                 merge_policy: str = MERGE_POLICY,
                 claim_code: str = ADMIN_CLAIM_CODE):
        self.storage = storage if storage is not None else JsonFileStorage.for_namespace()
        self.vault = Vault(self.storage, kdf_iterations=kdf_iterations)
        self.identities = IdentityManager(self.vault, self.storage)
        self.permissions = PermissionStore(self.storage)

        self._http_transport = http_transport
        self._ws_connect = ws_connect
        self._merge_policy = merge_policy
        self._claim_code = claim_code
        self._default_cloud_url = cloud_url or DEFAULT_CLOUD_URL

        prompts = prompts or UnwiredPrompts()
        self.cloud = CloudClient(self.cloud_url, transport=http_transport)
        self.consent = ConsentCoordinator(self.permissions, prompts)
        self.mediator = ActionMediator(self.permissions, prompts, self.cloud)
        self._facades: dict[str, "AgentFacade"] = {}

    # =========================================================================
    # Settings
    # =========================================================================

    @property
    def cloud_url(self) -> str:
        return self.storage.get(STORAGE_KEY_CLOUD_URL) or self._default_cloud_url

    def set_cloud_url(self, url: str) -> None:
        self.storage.set(STORAGE_KEY_CLOUD_URL, url.rstrip("/"))
        self._rebuild_cloud()

    def _rebuild_cloud(self) -> None:
        self.cloud = CloudClient(self.cloud_url, transport=self._http_transport)
        self.mediator.cloud = self.cloud

    @property
    def setup_complete(self) -> bool:
        return bool(self.storage.get(STORAGE_KEY_SETUP_COMPLETE, False))

    def mark_setup_complete(self) -> None:
        self.storage.set(STORAGE_KEY_SETUP_COMPLETE, True)

    def set_prompts(self, prompts: PromptPort) -> None:
        """Wire (or re-wire) the UI layer."""
        self.consent.prompts = prompts
        self.mediator.prompts = prompts

    # =========================================================================
    # Vault lifecycle
    # =========================================================================

    def has_vault(self) -> bool:
        return self.vault.has_vault()

    @property
    def is_locked(self) -> bool:
        return self.vault.is_locked

    async def create_vault(self, password: str, label: Optional[str] = None) -> str:
        """Create the vault and its first identity. Returns the recovery phrase."""
        mnemonic = await self.vault.create(password, label)
        self.identities.restore()
        await self._notify()
        return mnemonic

    async def import_phrase(self, mnemonic: str, password: str,
                            label: Optional[str] = None) -> list[Identity]:
        identities = await self.vault.import_phrase(mnemonic, password, label)
        self.identities.restore()
        await self._notify()
        return identities

    async def unlock(self, password: str) -> list[Identity]:
        identities = await self.vault.unlock(password)
        self.identities.restore()
        await self._notify()
        return identities

    async def lock(self) -> None:
        self.vault.lock()
        self.identities.clear()
        print("[VibeAgent] Vault locked", file=sys.stderr)
        await self._notify()

    async def reset(self) -> None:
        """Delete everything this agent has persisted."""
        for facade in list(self._facades.values()):
            await facade.close()
        self.vault.reset()
        self.identities.clear()
        self.storage.clear()
        self.permissions.reload()
        self._rebuild_cloud()

    # =========================================================================
    # Identities
    # =========================================================================

    def get_identities(self) -> list[Identity]:
        return self.identities.get_identities()

    def get_active_identity(self) -> Optional[Identity]:
        return self.identities.get_active_identity()

    def create_identity(self, label: Optional[str] = None,
                        picture_url: Optional[str] = None) -> Identity:
        return self.vault.create_identity(label, picture_url)

    async def set_active_identity(self, did: str) -> Identity:
        identity = self.identities.set_active_identity(did)
        await self._notify()
        return identity

    # =========================================================================
    # Backend tokens
    # =========================================================================

    def get_jwt(self, did: str) -> Optional[str]:
        return (self.storage.get(STORAGE_KEY_JWTS) or {}).get(did)

    def _store_jwt(self, did: str, token: str) -> None:
        jwts = self.storage.get(STORAGE_KEY_JWTS) or {}
        jwts[did] = token
        self.storage.set(STORAGE_KEY_JWTS, jwts)

    async def claim_identity(self, did: str, claim_code: Optional[str] = None) -> str:
        """Sign the claim code with the identity's key and store the JWT the backend returns."""
        identity = self.identities.find_identity(did)
        if identity is None or not identity.has_keys:
            raise IdentityNotFoundError(f"Identity {did} is not unlocked.")
        code = claim_code or self._claim_code
        token = await self.cloud.claim(did, code, sign_claim_code(identity.private_key, code))
        self._store_jwt(did, token)
        print(f"[VibeAgent] Claimed backend session for {did}", file=sys.stderr)
        return token

    async def ensure_token(self, identity: Identity) -> str:
        return self.get_jwt(identity.did) or await self.claim_identity(identity.did)

    # =========================================================================
    # Apps
    # =========================================================================

    def facade(self, origin: str) -> "AgentFacade":
        """The facade for an embedding origin (one per origin)."""
        if origin not in self._facades:
            self._facades[origin] = AgentFacade(self, origin)
        return self._facades[origin]

    def make_transport(self, session: AppSession, fetch) -> TransportMultiplexer:
        return TransportMultiplexer(
            url=self.cloud.websocket_url(session.token, session.manifest.app_id),
            merge_policy=make_merge_policy(fetch, self._merge_policy),
            connect=self._ws_connect,
        )

    async def _notify(self) -> None:
        for facade in list(self._facades.values()):
            await facade.invalidate()


# =============================================================================
# Facade
# =============================================================================

class AgentFacade:
    """What an embedded application at `origin` sees."""

    def __init__(self, context: AgentContext, origin: str):
        self._ctx = context
        self.origin = origin
        self._manifest: Optional[AppManifest] = None
        self._session: Optional[AppSession] = None
        self._listeners: list[StateListener] = []
        self._init_lock = asyncio.Lock()
        self._transport: Optional[TransportMultiplexer] = None

    @property
    def is_initialized(self) -> bool:
        return self._session is not None

    # =========================================================================
    # Session
    # =========================================================================

    async def init(self, manifest: Union[dict, AppManifest],
                   on_state_change: Optional[StateListener] = None) -> Unsubscribe:
        """Register the app and establish a session for the active identity.

        Prompts (init notice, consent) run as needed. A declined consent leaves
        the app without a session; a backend failure is raised after the
        listener has been told there is no session.
        """
        manifest = parse_manifest(manifest)
        if on_state_change is not None and on_state_change not in self._listeners:
            self._listeners.append(on_state_change)

        async def unsubscribe() -> None:
            if on_state_change in self._listeners:
                self._listeners.remove(on_state_change)
            await self._close_transport()

        async with self._init_lock:
            if self._session is not None and self._manifest == manifest and self._grants_cover(manifest):
                await self._emit()
                return unsubscribe

            self._manifest = manifest
            self._session = None
            await self._close_transport()
            try:
                await self._establish_session()
            except ConsentDeniedError as e:
                print(f"[VibeAgent] {self.origin}: {e}", file=sys.stderr)
            except NetworkError:
                await self._emit()
                raise
            await self._emit()
        return unsubscribe

    async def _establish_session(self) -> None:
        ctx = self._ctx
        manifest = self._manifest
        if ctx.vault.is_locked:
            return
        identity = ctx.identities.get_active_identity()
        if identity is None:
            return

        token = await ctx.ensure_token(identity)
        outcome = await ctx.consent.run(identity.did, self.origin, manifest)
        status = await ctx.cloud.app_status(token, manifest.app_id)
        if outcome.changed or not status.is_registered:
            grants = {scope: setting.value for scope, setting in outcome.grants.items()}
            await ctx.cloud.upsert_app(token, manifest, grants)
        self._session = AppSession(identity=identity, origin=self.origin, manifest=manifest, token=token)

    def _grants_cover(self, manifest: AppManifest) -> bool:
        existing = self._ctx.permissions.get_origin_permissions(self._session.identity.did, self.origin)
        return classify_scenario(manifest.permissions, existing) is Scenario.NO_CHANGE

    async def _require_session(self) -> AppSession:
        """The current session, re-established lazily after unlock or an identity switch."""
        if self._session is not None:
            return self._session
        if self._manifest is None:
            raise NotInitializedError("Call init() before reading or writing data.")
        if self._ctx.vault.is_locked:
            raise VaultLockedError("Vault is locked.")
        async with self._init_lock:
            if self._session is None:
                await self._establish_session()
                if self._session is not None:
                    await self._emit()
        if self._session is None:
            raise NotInitializedError("No active identity to act for.")
        return self._session

    async def invalidate(self) -> None:
        """Drop the session after lock/unlock/identity switch and tell listeners."""
        self._session = None
        await self._close_transport()
        await self._emit()

    def get_state(self) -> SessionState:
        ctx = self._ctx
        identities = [i.public_view() for i in ctx.identities.get_identities()]
        active = ctx.identities.get_active_identity()
        if active is None:
            return SessionState(identities=identities)
        if self._session is None or self._session.identity.did != active.did:
            return SessionState(active_identity=active.public_view(), identities=identities)
        return SessionState(
            account=Account(user_did=active.did),
            permissions=ctx.permissions.get_origin_permissions(active.did, self.origin),
            active_identity=active.public_view(),
            identities=identities,
        )

    async def _emit(self) -> None:
        state = self.get_state()
        for listener in list(self._listeners):
            try:
                out = listener(state)
                if inspect.isawaitable(out):
                    await out
            except Exception as e:
                print(f"[VibeAgent] State listener for {self.origin} failed: {e}", file=sys.stderr)

    # =========================================================================
    # Data
    # =========================================================================

    async def read_once(self, collection: str, filter: Optional[dict] = None) -> ReadResult:
        try:
            session = await self._require_session()
        except NetworkError as e:
            print(f"[VibeAgent] {self.origin}: session unavailable for read: {e}", file=sys.stderr)
            return ReadResult(ok=False, data=[], error=str(e))
        return await self._ctx.mediator.read_once(session, collection, filter)

    async def read(self, collection: str, filter: Optional[dict] = None,
                   callback: Optional[Callable[[ReadResult], Any]] = None) -> Unsubscribe:
        """Deliver the current documents, then every pushed change, to `callback`."""
        try:
            session = await self._require_session()
        except NetworkError as e:
            print(f"[VibeAgent] {self.origin}: session unavailable for read: {e}", file=sys.stderr)
            if callback is not None:
                await deliver(callback, ReadResult(ok=False, data=[], error=str(e)))
            return _noop
        mediator = self._ctx.mediator
        await mediator.authorize(session, ActionType.READ, collection, filter)

        initial = await mediator.fetch(session, collection, filter)
        if callback is not None:
            await deliver(callback, initial)

        transport = self._get_transport(session)
        transport.seed(collection, initial)
        try:
            await transport.subscribe(collection, callback or (lambda result: None), filter)
        except NetworkError as e:
            if callback is not None:
                await deliver(callback, ReadResult(ok=False, data=[], error=str(e)))
            return _noop

        async def unsubscribe() -> None:
            await self.unsubscribe(collection)
        return unsubscribe

    async def write(self, collection: str, data: Any) -> WriteResult:
        session = await self._require_session()
        return await self._ctx.mediator.write(session, collection, data)

    async def unsubscribe(self, collection: str) -> None:
        if self._transport is not None:
            await self._transport.unsubscribe(collection)

    async def close(self) -> None:
        self._listeners.clear()
        self._session = None
        await self._close_transport()

    # =========================================================================
    # Transport
    # =========================================================================

    def _get_transport(self, session: AppSession) -> TransportMultiplexer:
        if self._transport is None:
            self._transport = self._ctx.make_transport(session, self._refetch)
        return self._transport

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    async def _refetch(self, collection: str, filter: Optional[dict]) -> ReadResult:
        session = self._session
        if session is None:
            return ReadResult(ok=False, data=[], error="Session closed")
        scope = make_scope(ActionType.READ, collection)
        setting = self._ctx.permissions.get_permission(session.identity.did, self.origin, scope)
        # The subscription itself was confirmed by read(); only a stored ask or always keeps it live
        if setting is None or setting is PermissionSetting.NEVER:
            return ReadResult(ok=False, data=[], error=f"Permission denied for {scope}")
        return await self._ctx.mediator.fetch(session, collection, filter)
