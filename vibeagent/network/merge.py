"""
Merge policies — how a pushed `update` frame becomes a new ReadResult for a subscriber.

    RefetchPolicy           re-read the whole collection (server push is only a signal)
    IncrementalMergePolicy  patch a local snapshot keyed by _id (server pushes documents)

Depends on: config, models
"""

import sys
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from vibeagent.config import MERGE_POLICY
from vibeagent.models import ReadResult

Fetch = Callable[[str, Optional[dict]], Awaitable[ReadResult]]


class MergePolicy(ABC):

    def seed(self, collection: str, result: ReadResult) -> None:
        """Record the initial read for a subscription."""

    def forget(self, collection: str) -> None:
        """Drop local state for a collection when its subscription ends."""

    def reset(self) -> None:
        """Drop all local state (socket closed)."""

    @abstractmethod
    async def apply(self, collection: str, data: Any, filter: Optional[dict]) -> ReadResult:
        ...


class RefetchPolicy(MergePolicy):

    def __init__(self, fetch: Fetch):
        self._fetch = fetch

    async def apply(self, collection: str, data: Any, filter: Optional[dict]) -> ReadResult:
        return await self._fetch(collection, filter)


class IncrementalMergePolicy(MergePolicy):
    """Keeps the last known documents per collection, in first-seen order.

    A pushed document replaces the stored one with the same _id; a document
    carrying `_deleted: true` removes it. Documents without an _id are ignored.
    """

    def __init__(self):
        self._snapshots: dict[str, dict[str, dict]] = {}

    def seed(self, collection: str, result: ReadResult) -> None:
        if not result.ok:
            return
        self._snapshots[collection] = {
            doc["_id"]: doc for doc in result.data if isinstance(doc, dict) and doc.get("_id")
        }

    def forget(self, collection: str) -> None:
        self._snapshots.pop(collection, None)

    def reset(self) -> None:
        self._snapshots.clear()

    async def apply(self, collection: str, data: Any, filter: Optional[dict]) -> ReadResult:
        snapshot = self._snapshots.setdefault(collection, {})
        docs = data if isinstance(data, list) else [data]
        for doc in docs:
            if not isinstance(doc, dict) or not doc.get("_id"):
                print(f"[VibeAgent] Ignoring update without _id for '{collection}'", file=sys.stderr)
                continue
            if doc.get("_deleted"):
                snapshot.pop(doc["_id"], None)
            else:
                snapshot[doc["_id"]] = doc
        return ReadResult(ok=True, data=list(snapshot.values()))


def make_merge_policy(fetch: Fetch, name: str = MERGE_POLICY) -> MergePolicy:
    if name == "merge":
        return IncrementalMergePolicy()
    if name != "refetch":
        print(f"[VibeAgent] Unknown merge policy {name!r}, using refetch", file=sys.stderr)
    return RefetchPolicy(fetch)
