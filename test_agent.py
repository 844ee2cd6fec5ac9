#!/usr/bin/env python3
"""
End-to-end tests for the agent: vault, consent, mediated data calls and
live subscriptions against an in-process backend (cloud_stub.CloudStub
mounted through httpx.ASGITransport), plus the vibe-agent CLI.

Runs under pytest or standalone: python3 test_agent.py
"""

import asyncio
import io
import json
import os
import sys
import tempfile

import httpx

from cloud_stub import CloudStub
from vibeagent.agent import AgentContext
from vibeagent.cli import main as cli_main
from vibeagent.errors import NetworkError, NotInitializedError, PermissionDeniedError, VaultLockedError
from vibeagent.models import ActionResponse, PermissionSetting, ReadResult
from vibeagent.prompts import CallbackPrompts
from vibeagent.storage import MemoryStorage

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

PASSWORD = "Correct-Horse-1"
CLOUD = "http://cloud.test"
ORIGIN = "https://notes.example"
MANIFEST = {
    "appId": "notes-app",
    "name": "Notes",
    "description": "A note taking app",
    "permissions": ["read:notes", "write:notes"],
}


def run(coro):
    return asyncio.run(coro)


class UI:
    """Scripted user: grants every requested scope and answers confirmations."""

    def __init__(self, grant: str = "always", allow: bool = True, deny_consent: bool = False):
        self.grant = grant
        self.allow = allow
        self.deny_consent = deny_consent
        self.calls: list[str] = []

    async def init(self, manifest) -> None:
        self.calls.append("init")

    async def consent(self, request):
        self.calls.append("consent")
        if self.deny_consent:
            return None
        return {scope: self.grant for scope in request.new_permissions}

    async def action(self, request):
        self.calls.append(f"action:{request.scope}")
        return ActionResponse(allowed=self.allow)

    def prompts(self) -> CallbackPrompts:
        return CallbackPrompts(on_init_prompt=self.init, on_consent=self.consent, on_action=self.action)


class FakeSocket:

    def __init__(self):
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, message: dict) -> None:
        self.incoming.put_nowait(json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:

    def __init__(self, error: Exception = None):
        self.error = error
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        self.sockets.append(FakeSocket())
        return self.sockets[-1]


def make_context(stub: CloudStub, storage=None, ui: UI = None, connector=None) -> AgentContext:
    return AgentContext(
        storage=storage if storage is not None else MemoryStorage(),
        prompts=ui.prompts() if ui else None,
        cloud_url=CLOUD,
        http_transport=httpx.ASGITransport(app=stub.app),
        ws_connect=connector,
        kdf_iterations=1000,
    )


async def wait_for_results(results: list, count: int, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(results) < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} results, got {len(results)}")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Session establishment
# ---------------------------------------------------------------------------

def test_create_write_then_read_after_unlock() -> None:
    async def scenario():
        stub = CloudStub()
        storage = MemoryStorage()
        ui = UI()
        ctx = make_context(stub, storage, ui)
        phrase = await ctx.create_vault(PASSWORD, "Alice")
        assert len(phrase.split()) == 24

        app = ctx.facade(ORIGIN)
        states = []
        await app.init(MANIFEST, states.append)
        did = ctx.get_active_identity().did
        assert states[-1].account.user_did == did
        assert states[-1].permissions == {"read:notes": PermissionSetting.ALWAYS,
                                          "write:notes": PermissionSetting.ALWAYS}
        assert ui.calls == ["init", "consent"]
        assert (stub.calls["claim"], stub.calls["upsert"]) == (1, 1)
        assert stub.apps[(did, "notes-app")]["grants"] == {"read:notes": "always", "write:notes": "always"}

        written = await app.write("notes", {"text": "hello"})
        assert written.ok and len(written.ids) == 1

        # a second agent on the same storage: no prompts, no new claim, no re-registration
        ui2 = UI()
        fresh = make_context(stub, storage, ui2)
        assert fresh.is_locked and fresh.has_vault()
        await fresh.unlock(PASSWORD)
        app2 = fresh.facade(ORIGIN)
        await app2.init(MANIFEST)
        result = await app2.read_once("notes")
        assert result.ok
        assert [d["text"] for d in result.data] == ["hello"]
        assert result.data[0]["_id"] == written.ids[0]
        assert ui2.calls == []
        assert (stub.calls["claim"], stub.calls["upsert"]) == (1, 1)

    run(scenario())


def test_locked_init_is_public_only() -> None:
    async def scenario():
        stub = CloudStub()
        ui = UI()
        ctx = make_context(stub, ui=ui)
        await ctx.create_vault(PASSWORD, "Alice")
        await ctx.lock()
        stub.calls.clear()

        app = ctx.facade(ORIGIN)
        states = []
        await app.init(MANIFEST, states.append)
        state = states[-1]
        assert state.account is None and state.active_identity is None
        assert [i.label for i in state.identities] == ["Alice"]
        assert state.identities[0].public_key is None
        assert ui.calls == [] and sum(stub.calls.values()) == 0

        try:
            await app.read_once("notes")
        except VaultLockedError:
            pass
        else:
            raise AssertionError("expected VaultLockedError")

        # unlocking invalidates and the next data call re-establishes the session lazily
        await ctx.unlock(PASSWORD)
        assert states[-1].active_identity.label == "Alice"
        await app.write("notes", {"text": "after unlock"})
        assert states[-1].account is not None
        assert ui.calls == ["init", "consent"]

    run(scenario())


def test_data_call_before_init() -> None:
    async def scenario():
        ctx = make_context(CloudStub(), ui=UI())
        await ctx.create_vault(PASSWORD)
        try:
            await ctx.facade(ORIGIN).read_once("notes")
        except NotInitializedError:
            return
        raise AssertionError("expected NotInitializedError")

    run(scenario())


def test_consent_denied() -> None:
    async def scenario():
        stub = CloudStub()
        ui = UI(deny_consent=True)
        ctx = make_context(stub, ui=ui)
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        states = []
        await app.init(MANIFEST, states.append)
        assert states[-1].account is None
        assert states[-1].active_identity is not None
        assert ctx.permissions.list_origins(ctx.get_active_identity().did) == []
        assert stub.calls["upsert"] == 0
        try:
            await app.write("notes", {"text": "x"})
        except PermissionDeniedError:
            pass
        else:
            raise AssertionError("expected PermissionDeniedError")
        assert stub.calls["write"] == 0

    run(scenario())


def test_manifest_update_prompts_for_new_scopes_only() -> None:
    async def scenario():
        stub = CloudStub()
        ui = UI()
        ctx = make_context(stub, ui=ui)
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        await app.init(dict(MANIFEST, permissions=["read:notes"]))
        assert ui.calls == ["init", "consent"]
        await app.init(dict(MANIFEST, permissions=["read:notes", "read:contacts"]))
        assert ui.calls == ["init", "consent", "consent"]
        assert stub.calls["upsert"] == 2
        grants = ctx.permissions.get_origin_permissions(ctx.get_active_identity().did, ORIGIN)
        assert sorted(grants) == ["read:contacts", "read:notes", "write:notes"]

    run(scenario())


def test_revoke_returns_to_ask_and_new() -> None:
    async def scenario():
        stub = CloudStub()
        ui = UI()
        ctx = make_context(stub, ui=ui)
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        did = ctx.get_active_identity().did
        assert ctx.permissions.revoke_origin_permissions(did, ORIGIN)

        assert (await app.read_once("notes")).ok
        assert ui.calls[-1] == "action:read:notes"
        await app.init(MANIFEST)
        assert ui.calls[-2:] == ["init", "consent"]

    run(scenario())


def test_never_setting_blocks_calls() -> None:
    async def scenario():
        stub = CloudStub()
        ctx = make_context(stub, ui=UI(grant="never"))
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        before = stub.calls["read"]
        try:
            await app.read_once("notes")
        except PermissionDeniedError:
            pass
        else:
            raise AssertionError("expected PermissionDeniedError")
        assert stub.calls["read"] == before

    run(scenario())


def test_identity_switch_uses_new_session() -> None:
    async def scenario():
        stub = CloudStub()
        ui = UI()
        ctx = make_context(stub, ui=ui)
        await ctx.create_vault(PASSWORD, "Alice")
        app = ctx.facade(ORIGIN)
        states = []
        await app.init(MANIFEST, states.append)
        await app.write("notes", {"text": "alice's"})

        bob = ctx.create_identity("Bob")
        await ctx.set_active_identity(bob.did)
        assert states[-1].account is None
        assert states[-1].active_identity.did == bob.did

        result = await app.read_once("notes")
        assert result.ok and result.data == []
        assert stub.calls["claim"] == 2
        assert ui.calls == ["init", "consent", "init", "consent"]
        assert states[-1].account.user_did == bob.did

    run(scenario())


def test_backend_failure_on_read_and_write() -> None:
    async def scenario():
        stub = CloudStub()
        ctx = make_context(stub, ui=UI())
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        stub.fail_with = 503
        result = await app.read_once("notes")
        assert not result.ok and "503" in result.error
        try:
            await app.write("notes", {"text": "x"})
        except NetworkError as e:
            assert e.status == 503
        else:
            raise AssertionError("expected NetworkError")

    run(scenario())


def test_backend_down_while_rebuilding_session() -> None:
    """After unlock the session is rebuilt lazily; an outage then is a failed read, not an exception."""
    async def scenario():
        stub = CloudStub()
        ctx = make_context(stub, ui=UI(), connector=FakeConnector())
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        await ctx.lock()
        await ctx.unlock(PASSWORD)
        assert not app.is_initialized

        stub.fail_with = 503
        result = await app.read_once("notes")
        assert not result.ok and "503" in result.error

        results: list[ReadResult] = []
        unsubscribe = await app.read("notes", None, results.append)
        assert [r.ok for r in results] == [False]
        await unsubscribe()

        stub.fail_with = 0
        result = await app.read_once("notes")
        assert result.ok
        assert app.is_initialized

    run(scenario())


# ---------------------------------------------------------------------------
# Live reads
# ---------------------------------------------------------------------------

def test_live_read_refetches_on_update() -> None:
    async def scenario():
        stub = CloudStub()
        connector = FakeConnector()
        ctx = make_context(stub, ui=UI(), connector=connector)
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        await app.write("notes", {"text": "one"})

        results: list[ReadResult] = []
        unsubscribe = await app.read("notes", None, results.append)
        assert [d["text"] for d in results[0].data] == ["one"]
        assert len(connector.urls) == 1
        assert connector.urls[0].startswith("ws://cloud.test/ws?token=tok-")
        assert connector.urls[0].endswith("&appId=notes-app")
        socket = connector.sockets[0]
        assert socket.sent == [{"action": "subscribe", "collection": "notes"}]

        await app.write("notes", {"text": "two"})
        socket.push({"type": "update", "collection": "notes", "data": {}})
        await wait_for_results(results, 2)
        assert [d["text"] for d in results[1].data] == ["one", "two"]

        # a second subscription shares the socket
        await app.read("posts", None, lambda result: None)
        assert len(connector.urls) == 1

        await unsubscribe()
        assert socket.sent[-1] == {"action": "unsubscribe", "collection": "notes"}

        await ctx.lock()
        assert socket.closed

    run(scenario())


def test_live_read_connect_failure() -> None:
    async def scenario():
        stub = CloudStub()
        ctx = make_context(stub, ui=UI(), connector=FakeConnector(error=OSError("refused")))
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        results: list[ReadResult] = []
        unsubscribe = await app.read("notes", None, results.append)
        assert [r.ok for r in results] == [True, False]
        await unsubscribe()

    run(scenario())


def test_pushed_update_respects_current_setting() -> None:
    """Ask confirms the subscription once; never or a revoke blocks later refetches."""
    async def scenario():
        stub = CloudStub()
        connector = FakeConnector()
        ui = UI(grant="ask")
        ctx = make_context(stub, ui=ui, connector=connector)
        await ctx.create_vault(PASSWORD)
        did = ctx.identities.get_active_identity().did
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)

        results: list[ReadResult] = []
        await app.read("notes", None, results.append)
        socket = connector.sockets[0]
        assert ui.calls.count("action:read:notes") == 1

        socket.push({"type": "update", "collection": "notes", "data": {}})
        await wait_for_results(results, 2)
        assert results[1].ok
        assert ui.calls.count("action:read:notes") == 1

        ctx.permissions.set_permission(did, ORIGIN, "read:notes", "never")
        reads = stub.calls["read"]
        socket.push({"type": "update", "collection": "notes", "data": {}})
        await wait_for_results(results, 3)
        assert not results[2].ok
        assert stub.calls["read"] == reads

        ctx.permissions.revoke_origin_permissions(did, ORIGIN)
        socket.push({"type": "update", "collection": "notes", "data": {}})
        await wait_for_results(results, 4)
        assert not results[3].ok
        assert stub.calls["read"] == reads
        await ctx.lock()

    run(scenario())


# ---------------------------------------------------------------------------
# Settings & reset
# ---------------------------------------------------------------------------

def test_cloud_url_and_setup_flag() -> None:
    storage = MemoryStorage()
    ctx = make_context(CloudStub(), storage)
    assert ctx.cloud_url == CLOUD
    assert not ctx.setup_complete
    ctx.set_cloud_url("https://api.vibe.example/")
    ctx.mark_setup_complete()
    again = make_context(CloudStub(), storage)
    assert again.cloud_url == "https://api.vibe.example"
    assert again.cloud.base_url == "https://api.vibe.example"
    assert again.setup_complete


def test_reset_forgets_everything() -> None:
    async def scenario():
        stub = CloudStub()
        storage = MemoryStorage()
        ctx = make_context(stub, storage, UI())
        await ctx.create_vault(PASSWORD)
        app = ctx.facade(ORIGIN)
        await app.init(MANIFEST)
        did = ctx.get_active_identity().did
        await ctx.reset()
        assert not ctx.has_vault() and ctx.is_locked
        assert ctx.get_identities() == []
        assert ctx.permissions.list_origins(did) == []
        assert ctx.get_jwt(did) is None
        await ctx.create_vault("another-password")

    run(scenario())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_cli_vault_and_permissions() -> None:
    saved = os.environ.get("VIBE_PASSWORD")
    os.environ["VIBE_PASSWORD"] = PASSWORD
    try:
        with tempfile.TemporaryDirectory() as home:
            def cli(*args):
                out, err = io.StringIO(), io.StringIO()
                code = cli_main(["--home", home, *args], stdout=out, stderr=err)
                return code, out.getvalue(), err.getvalue()

            code, out, _ = cli("create", "--label", "Alice")
            assert code == 0
            assert len(out.strip().splitlines()[-1].split()) == 24

            code, _, err = cli("create")
            assert code == 1 and "already exists" in err

            code, out, _ = cli("add-identity", "Bob")
            bob = out.strip()
            assert code == 0 and bob.startswith("did:vibe:z")

            code, out, _ = cli("identities")
            lines = out.strip().splitlines()
            assert lines[0].startswith("*") and lines[0].endswith("Alice")
            assert lines[1].endswith("Bob")

            assert cli("grant", ORIGIN, "read:notes", "always")[0] == 0
            code, out, _ = cli("permissions")
            assert ORIGIN in out and "read:notes" in out and "always" in out
            assert "Revoked" in cli("revoke", ORIGIN)[1]
            assert "No permissions" in cli("permissions")[1]

            assert cli("cloud-url", "https://api.vibe.example")[1].strip() == "https://api.vibe.example"
            assert cli("use", "did:vibe:zUnknown")[0] == 1

            assert cli("reset", "--yes")[0] == 0
            assert cli("identities")[1] == ""
    finally:
        if saved is None:
            os.environ.pop("VIBE_PASSWORD", None)
        else:
            os.environ["VIBE_PASSWORD"] = saved


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def main() -> None:
    print(f"\n{BOLD}Vibe Agent End-to-End Tests{RESET}\n")
    tests = [(name, fn) for name, fn in globals().items() if name.startswith("test_") and callable(fn)]
    failed = 0
    for name, fn in tests:
        try:
            fn()
            print(f"  {GREEN}✓{RESET} {name}")
        except Exception as e:
            failed += 1
            print(f"  {RED}✗{RESET} {name}\n      {type(e).__name__}: {e}")
    print(f"\n{'─' * 40}")
    if failed:
        print(f"{RED}{BOLD}{failed}/{len(tests)} tests failed.{RESET}")
    else:
        print(f"{GREEN}{BOLD}All {len(tests)} tests passed.{RESET}")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
