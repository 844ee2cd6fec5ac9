"""
In-memory stand-in for the Vibe cloud backend, for in-process tests.

Implements the HTTP contract the agent consumes:

    POST /api/v1/admin/claim     signed claim code -> JWT
    POST /api/v1/data/read       {collection, filter} -> {docs}
    POST /api/v1/data/write      {collection, data} -> {ok, id} | [{ok, id}]
    GET  /api/v1/apps/status     ?appId= -> {isRegistered, manifest?, grants?}
    POST /api/v1/apps/upsert     app registration

Mount with httpx.AsyncClient(transport=ASGITransport(stub.app)).
Documents are stored per DID and collection; tokens are opaque random strings.
"""

import base64
import binascii
import uuid
from collections import Counter

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from vibeagent.crypto import verify
from vibeagent.did import decode_did
from vibeagent.errors import ValidationError


class CloudStub:

    def __init__(self, claim_code: str = "ABC1-XYZ9"):
        self.claim_code = claim_code
        self.tokens: dict[str, str] = {}
        self.docs: dict[str, dict[str, list[dict]]] = {}
        self.apps: dict[tuple[str, str], dict] = {}
        self.calls: Counter = Counter()
        self.fail_with: int = 0   # when set, data and app-status calls answer with this status
        self.app = Starlette(routes=[
            Route("/api/v1/admin/claim", self.claim, methods=["POST"]),
            Route("/api/v1/data/read", self.read, methods=["POST"]),
            Route("/api/v1/data/write", self.write, methods=["POST"]),
            Route("/api/v1/apps/status", self.app_status, methods=["GET"]),
            Route("/api/v1/apps/upsert", self.app_upsert, methods=["POST"]),
        ])

    def _did_for(self, request: Request):
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return None
        return self.tokens.get(auth[len("Bearer "):])

    async def claim(self, request: Request) -> JSONResponse:
        self.calls["claim"] += 1
        body = await request.json()
        did = body.get("did", "")
        if body.get("claimCode") != self.claim_code:
            return JSONResponse({"error": "Invalid claim code"}, status_code=403)
        try:
            public_key = decode_did(did)
            signature = base64.b64decode(body.get("signature", ""), validate=True)
        except (ValidationError, binascii.Error):
            return JSONResponse({"error": "Malformed claim"}, status_code=400)
        if not verify(public_key, signature, self.claim_code.encode("utf-8")):
            return JSONResponse({"error": "Invalid signature"}, status_code=401)
        token = f"tok-{uuid.uuid4().hex}"
        self.tokens[token] = did
        return JSONResponse({"token": token})

    async def read(self, request: Request) -> JSONResponse:
        self.calls["read"] += 1
        did = self._did_for(request)
        if did is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if self.fail_with:
            return JSONResponse({"error": "Backend unavailable"}, status_code=self.fail_with)
        body = await request.json()
        docs = self.docs.get(did, {}).get(body["collection"], [])
        wanted = body.get("filter") or {}
        matched = [d for d in docs if all(d.get(k) == v for k, v in wanted.items())]
        return JSONResponse({"docs": matched})

    async def write(self, request: Request) -> JSONResponse:
        self.calls["write"] += 1
        did = self._did_for(request)
        if did is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if self.fail_with:
            return JSONResponse({"error": "Backend unavailable"}, status_code=self.fail_with)
        body = await request.json()
        collection = self.docs.setdefault(did, {}).setdefault(body["collection"], [])
        items = body["data"] if isinstance(body["data"], list) else [body["data"]]
        results = []
        for item in items:
            doc = dict(item)
            doc.setdefault("_id", f"{body['collection']}/{uuid.uuid4().hex[:12]}")
            collection[:] = [d for d in collection if d["_id"] != doc["_id"]] + [doc]
            results.append({"ok": True, "id": doc["_id"]})
        return JSONResponse(results if isinstance(body["data"], list) else results[0])

    async def app_status(self, request: Request) -> JSONResponse:
        self.calls["status"] += 1
        did = self._did_for(request)
        if did is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        if self.fail_with:
            return JSONResponse({"error": "Backend unavailable"}, status_code=self.fail_with)
        entry = self.apps.get((did, request.query_params.get("appId", "")))
        if entry is None:
            return JSONResponse({"isRegistered": False})
        return JSONResponse({"isRegistered": True, "manifest": entry["manifest"], "grants": entry["grants"]})

    async def app_upsert(self, request: Request) -> JSONResponse:
        self.calls["upsert"] += 1
        did = self._did_for(request)
        if did is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        body = await request.json()
        self.apps[(did, body["appId"])] = {
            "manifest": {k: body.get(k) for k in ("appId", "name", "description", "pictureUrl", "permissions")},
            "grants": body.get("grants") or {},
        }
        return JSONResponse({"ok": True})
