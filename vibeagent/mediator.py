"""
Action mediator — the permission gate in front of every data call.

    never   PermissionDeniedError, no prompt, no network
    ask     action confirmation prompt; rememberChoice stores always/never
    always  straight through
    (unset) treated as ask

Only calls that pass the gate reach the backend.

Depends on: config, errors, models, permissions, prompts, documents, network/http
"""

import sys
from typing import Any, Optional

from vibeagent.config import (
    PREVIEW_MASK,
    PREVIEW_MAX_DEPTH,
    PREVIEW_MAX_ITEMS,
    PREVIEW_MAX_STRING,
    PREVIEW_SENSITIVE_KEYS,
)
from vibeagent.documents import parse_documents, validate_write_payload
from vibeagent.errors import NetworkError, PermissionDeniedError, PromptTimeoutError, ValidationError
from vibeagent.models import (
    ActionRequest,
    ActionType,
    AppSession,
    PermissionSetting,
    ReadResult,
    WriteResult,
    make_scope,
)
from vibeagent.network.http import CloudClient
from vibeagent.permissions import PermissionStore
from vibeagent.prompts import PromptPort


# =============================================================================
# Preview redaction
# =============================================================================

def _is_sensitive(key) -> bool:
    return isinstance(key, str) and key.lower().replace("_", "").replace("-", "") in PREVIEW_SENSITIVE_KEYS


def redact_preview(value: Any, depth: int = 0) -> Any:
    """Copy of a filter/data payload safe to show in a confirmation dialog."""
    if depth >= PREVIEW_MAX_DEPTH:
        return "..."
    if isinstance(value, dict):
        return {
            k: PREVIEW_MASK if _is_sensitive(k) else redact_preview(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        items = [redact_preview(v, depth + 1) for v in value[:PREVIEW_MAX_ITEMS]]
        if len(value) > PREVIEW_MAX_ITEMS:
            items.append(f"... {len(value) - PREVIEW_MAX_ITEMS} more")
        return items
    if isinstance(value, str) and len(value) > PREVIEW_MAX_STRING:
        return value[:PREVIEW_MAX_STRING] + "..."
    return value


# =============================================================================
# Mediator
# =============================================================================

class ActionMediator:

    def __init__(self, permissions: PermissionStore, prompts: PromptPort, cloud: CloudClient):
        self._permissions = permissions
        self.prompts = prompts
        self.cloud = cloud

    async def authorize(self, session: AppSession, action: ActionType, collection: str,
                        payload: Any = None) -> None:
        """Raise PermissionDeniedError unless the call may proceed."""
        did = session.identity.did
        scope = make_scope(action, collection)
        setting = self._permissions.get_permission(did, session.origin, scope)

        if setting is PermissionSetting.NEVER:
            raise PermissionDeniedError(f"Permission denied for {scope} by {session.origin}")
        if setting is PermissionSetting.ALWAYS:
            return

        request = ActionRequest(
            action=action,
            origin=session.origin,
            collection=collection,
            identity=session.identity.public_view(),
            app=session.app_info,
            payload=payload,
            preview=redact_preview(payload),
        )
        try:
            response = await self.prompts.request_action_confirmation(request)
        except PromptTimeoutError as e:
            print(f"[VibeAgent] {e}; denying {scope}", file=sys.stderr)
            raise PermissionDeniedError(f"No answer to confirmation for {scope}") from None

        if response.remember_choice:
            remembered = PermissionSetting.ALWAYS if response.allowed else PermissionSetting.NEVER
            self._permissions.set_permission(did, session.origin, scope, remembered)
        if not response.allowed:
            raise PermissionDeniedError(f"User denied {scope} for {session.origin}")

    # =========================================================================
    # Data calls
    # =========================================================================

    async def fetch(self, session: AppSession, collection: str,
                    filter: Optional[dict] = None) -> ReadResult:
        """Ungated read. Backend failures come back as ok=False."""
        try:
            docs = await self.cloud.read(session.token, session.manifest.app_id, collection, filter)
            data = parse_documents(collection, docs)
        except (NetworkError, ValidationError) as e:
            print(f"[VibeAgent] Read of '{collection}' failed: {e}", file=sys.stderr)
            return ReadResult(ok=False, data=[], error=str(e))
        return ReadResult(ok=True, data=data)

    async def read_once(self, session: AppSession, collection: str,
                        filter: Optional[dict] = None) -> ReadResult:
        await self.authorize(session, ActionType.READ, collection, filter)
        return await self.fetch(session, collection, filter)

    async def write(self, session: AppSession, collection: str, data: Any) -> WriteResult:
        """Validate, gate, then write. Backend failures raise NetworkError."""
        payload = validate_write_payload(collection, data)
        await self.authorize(session, ActionType.WRITE, collection, payload)
        return await self.cloud.write(session.token, session.manifest.app_id, collection, payload)
