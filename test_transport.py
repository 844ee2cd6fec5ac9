#!/usr/bin/env python3
"""
Tests for the WebSocket transport multiplexer and the merge policies.

A FakeSocket stands in for the websockets connection: it records sent
frames and yields whatever the test pushes. The connect function can be
held on an asyncio.Event to observe the CONNECTING state.

Runs under pytest or standalone: python3 test_transport.py
"""

import asyncio
import json
import sys

from vibeagent.errors import NetworkError
from vibeagent.models import ReadResult, TransportState
from vibeagent.network.merge import IncrementalMergePolicy, RefetchPolicy, make_merge_policy
from vibeagent.network.websocket import TransportMultiplexer

GREEN = "\033[92m"
RED = "\033[91m"
BOLD = "\033[1m"
RESET = "\033[0m"

URL = "ws://cloud.test/ws?token=tok&appId=notes-app"


def run(coro):
    return asyncio.run(coro)


class FakeSocket:

    def __init__(self):
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, message) -> None:
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def hang_up(self) -> None:
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def frames(self, action: str) -> list[str]:
        return [m["collection"] for m in self.sent if m.get("action") == action]


class FakeConnector:

    def __init__(self, socket: FakeSocket = None, gate: asyncio.Event = None, error: Exception = None):
        self.socket = socket
        self.gate = gate
        self.error = error
        self.urls: list[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.socket


class Inbox:
    """Subscriber callback that collects results and signals arrivals."""

    def __init__(self):
        self.results: list[ReadResult] = []
        self.arrived = asyncio.Event()

    def __call__(self, result: ReadResult) -> None:
        self.results.append(result)
        self.arrived.set()

    async def next(self, timeout: float = 1.0) -> ReadResult:
        await asyncio.wait_for(self.arrived.wait(), timeout)
        self.arrived.clear()
        return self.results[-1]


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def counting_fetch(docs: list):
    calls = []

    async def fetch(collection, filter):
        calls.append((collection, filter))
        return ReadResult(ok=True, data=list(docs))

    return fetch, calls


# ---------------------------------------------------------------------------
# Connection & pending queue
# ---------------------------------------------------------------------------

def test_pending_flushed_exactly_once() -> None:
    async def scenario():
        socket = FakeSocket()
        gate = asyncio.Event()
        connector = FakeConnector(socket, gate)
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=connector)

        first = asyncio.create_task(mux.subscribe("notes", Inbox()))
        second = asyncio.create_task(mux.subscribe("posts", Inbox()))
        await settle()
        assert mux.state is TransportState.CONNECTING
        assert sorted(mux.pending) == ["notes", "posts"]
        third = asyncio.create_task(mux.subscribe("notes", Inbox()))
        await settle()
        assert socket.sent == []

        gate.set()
        await asyncio.gather(first, second, third)
        assert mux.state is TransportState.OPEN
        assert sorted(socket.frames("subscribe")) == ["notes", "posts"]
        assert mux.pending == []
        assert sorted(mux.subscriptions) == ["notes", "posts"]
        assert connector.urls == [URL]
        await mux.close()

    run(scenario())


def test_subscribe_when_open_sends_immediately() -> None:
    async def scenario():
        socket = FakeSocket()
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(socket))
        await mux.subscribe("notes", Inbox())
        await mux.subscribe("contacts", Inbox(), {"name": "Bob"})
        assert socket.frames("subscribe") == ["notes", "contacts"]
        await mux.close()

    run(scenario())


def test_connect_failure() -> None:
    async def scenario():
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(error=OSError("refused")))
        try:
            await mux.subscribe("notes", Inbox())
        except NetworkError:
            pass
        else:
            raise AssertionError("expected NetworkError")
        assert mux.state is TransportState.CLOSED
        assert mux.pending == [] and mux.subscriptions == []

    run(scenario())


def test_connect_timeout() -> None:
    async def scenario():
        fetch, _ = counting_fetch([])
        connector = FakeConnector(FakeSocket(), gate=asyncio.Event())
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=connector, connect_timeout=0.05)
        try:
            await mux.connect()
        except NetworkError:
            return mux.state
        raise AssertionError("expected NetworkError")

    assert run(scenario()) is TransportState.CLOSED


# ---------------------------------------------------------------------------
# Incoming frames
# ---------------------------------------------------------------------------

def test_update_refetches() -> None:
    async def scenario():
        socket = FakeSocket()
        fetch, calls = counting_fetch([{"_id": "notes/1", "text": "fresh"}])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(socket))
        inbox = Inbox()
        await mux.subscribe("notes", inbox, {"pinned": True})

        socket.push({"type": "update", "collection": "notes", "data": {"_id": "notes/1"}})
        result = await inbox.next()
        assert result.ok and result.data == [{"_id": "notes/1", "text": "fresh"}]
        assert calls == [("notes", {"pinned": True})]

        # frames for unknown collections, status and errors do not reach subscribers
        socket.push({"type": "update", "collection": "posts", "data": {}})
        socket.push({"status": "subscribed", "collection": "notes"})
        socket.push({"error": "boom"})
        socket.push("not json")
        socket.push([1, 2, 3])
        await settle(20)
        assert len(inbox.results) == 1
        assert mux.state is TransportState.OPEN
        await mux.close()

    run(scenario())


def test_incremental_merge() -> None:
    async def scenario():
        socket = FakeSocket()
        mux = TransportMultiplexer(URL, IncrementalMergePolicy(), connect=FakeConnector(socket))
        inbox = Inbox()
        mux.seed("notes", ReadResult(ok=True, data=[{"_id": "1", "text": "a"}, {"_id": "2", "text": "b"}]))
        await mux.subscribe("notes", inbox)

        socket.push({"type": "update", "collection": "notes", "data": {"_id": "2", "text": "B"}})
        assert [d["text"] for d in (await inbox.next()).data] == ["a", "B"]

        socket.push({"type": "update", "collection": "notes",
                     "data": [{"_id": "3", "text": "c"}, {"_id": "1", "_deleted": True}, {"text": "no id"}]})
        assert [d["_id"] for d in (await inbox.next()).data] == ["2", "3"]
        await mux.close()

    run(scenario())


def test_async_callback_and_failing_callback() -> None:
    async def scenario():
        socket = FakeSocket()
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(socket))
        seen = asyncio.Event()

        def broken(result):
            raise RuntimeError("subscriber bug")

        async def good(result):
            seen.set()

        await mux.subscribe("posts", broken)
        await mux.subscribe("notes", good)
        socket.push({"type": "update", "collection": "posts", "data": {}})
        socket.push({"type": "update", "collection": "notes", "data": {}})
        await asyncio.wait_for(seen.wait(), 1)
        assert mux.state is TransportState.OPEN
        await mux.close()

    run(scenario())


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

def test_server_close_clears_subscriptions() -> None:
    async def scenario():
        socket = FakeSocket()
        policy = IncrementalMergePolicy()
        mux = TransportMultiplexer(URL, policy, connect=FakeConnector(socket))
        mux.seed("notes", ReadResult(ok=True, data=[{"_id": "1"}]))
        await mux.subscribe("notes", Inbox())
        socket.hang_up()
        await until(lambda: mux.state is TransportState.CLOSED)
        assert mux.subscriptions == []
        assert policy._snapshots == {}

        # a later subscribe opens a fresh connection
        await mux.subscribe("posts", Inbox())
        assert mux.state is TransportState.OPEN
        await mux.close()

    run(scenario())


def test_unsubscribe() -> None:
    async def scenario():
        socket = FakeSocket()
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(socket))
        await mux.unsubscribe("notes")                   # not open: local only
        assert socket.sent == []

        await mux.subscribe("notes", Inbox())
        await mux.unsubscribe("notes")
        assert socket.frames("unsubscribe") == ["notes"]
        assert mux.subscriptions == []

        await mux.subscribe("posts", Inbox())
        socket.closed = True                              # send fails: logged, not raised
        await mux.unsubscribe("posts")
        await mux.close()
        assert mux.state is TransportState.CLOSED

    run(scenario())


def test_send_failure_closes() -> None:
    async def scenario():
        socket = FakeSocket()
        fetch, _ = counting_fetch([])
        mux = TransportMultiplexer(URL, RefetchPolicy(fetch), connect=FakeConnector(socket))
        await mux.subscribe("notes", Inbox())
        socket.closed = True
        try:
            await mux.subscribe("posts", Inbox())
        except NetworkError:
            pass
        else:
            raise AssertionError("expected NetworkError")
        assert mux.state is TransportState.CLOSED
        assert mux.subscriptions == []
        await mux.close()

    run(scenario())


def test_make_merge_policy() -> None:
    fetch, _ = counting_fetch([])
    assert isinstance(make_merge_policy(fetch, "merge"), IncrementalMergePolicy)
    assert isinstance(make_merge_policy(fetch, "refetch"), RefetchPolicy)
    assert isinstance(make_merge_policy(fetch, "bogus"), RefetchPolicy)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def main() -> None:
    print(f"\n{BOLD}Vibe Agent Transport Tests{RESET}\n")
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
