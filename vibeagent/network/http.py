"""
Backend HTTP client — data read/write, app registration, and identity claim.

Every request carries the identity's bearer JWT and the X-Vibe-App-ID header.
A transport can be injected (httpx.MockTransport / ASGITransport) for
in-process testing.

Depends on: config, errors, models, schemas
"""

from typing import Any, Optional
from urllib.parse import urlencode, urlparse, urlunparse

import httpx

from vibeagent.config import APP_ID_HEADER, HTTP_TIMEOUT, WS_PATH
from vibeagent.errors import NetworkError
from vibeagent.models import AppManifest, AppStatus, WriteResult
from vibeagent.schemas import parse_app_status, parse_claim_response, parse_read_response


def strip_base_url(url: str) -> str:
    return url.rstrip("/")


def websocket_url(base_url: str, token: str, app_id: str) -> str:
    """ws(s)://host/ws?token=...&appId=... for an http(s) base URL."""
    parsed = urlparse(strip_base_url(base_url))
    scheme = "wss" if parsed.scheme == "https" else "ws"
    query = urlencode({"token": token, "appId": app_id})
    return urlunparse((scheme, parsed.netloc, parsed.path + WS_PATH, "", query, ""))


def normalize_write_response(result: Any) -> WriteResult:
    """Fold the backend's single / list / failure write shapes into one WriteResult."""
    if isinstance(result, list):
        ids = [item["id"] for item in result if isinstance(item, dict) and item.get("ok") and item.get("id")]
        errors = [item for item in result if not (isinstance(item, dict) and item.get("ok"))]
        return WriteResult(ok=not errors, ids=ids, errors=errors)
    if isinstance(result, dict) and result.get("ok") and result.get("id"):
        return WriteResult(ok=True, ids=[result["id"]])
    if isinstance(result, dict) and result.get("ok") is False:
        return WriteResult(ok=False, ids=[], errors=[result])
    return WriteResult(
        ok=False,
        ids=[],
        errors=[{"id": "unknown", "error": "unknown", "reason": "Unexpected API response format"}],
    )


class CloudClient:
    """Thin async client for the backend API. Raises NetworkError on any failure."""

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = HTTP_TIMEOUT):
        self.base_url = strip_base_url(base_url)
        self._transport = transport
        self._timeout = timeout

    def websocket_url(self, token: str, app_id: str) -> str:
        return websocket_url(self.base_url, token, app_id)

    async def _request(self, method: str, path: str, *, token: Optional[str] = None,
                       app_id: Optional[str] = None, json: Any = None,
                       params: Optional[dict] = None) -> Any:
        headers = {"Content-Type": "application/json"}
        if app_id:
            headers[APP_ID_HEADER] = app_id
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.request(method, self.base_url + path, headers=headers,
                                            json=json, params=params)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 204:
            return None
        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = body.get("error") or body.get("message") or resp.reason_phrase
            except (ValueError, AttributeError):
                message = resp.text or resp.reason_phrase
            raise NetworkError(f"API request failed ({resp.status_code}): {message}",
                               status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"{method} {path} returned invalid JSON") from e

    # =========================================================================
    # Data
    # =========================================================================

    async def read(self, token: str, app_id: str, collection: str,
                   filter: Optional[dict] = None) -> list:
        body = await self._request("POST", "/api/v1/data/read", token=token, app_id=app_id,
                                   json={"collection": collection, "filter": filter or {}})
        return parse_read_response(body or {})

    async def write(self, token: str, app_id: str, collection: str, data: Any) -> WriteResult:
        body = await self._request("POST", "/api/v1/data/write", token=token, app_id=app_id,
                                   json={"collection": collection, "data": data})
        return normalize_write_response(body)

    # =========================================================================
    # Apps
    # =========================================================================

    async def app_status(self, token: str, app_id: str) -> AppStatus:
        body = await self._request("GET", "/api/v1/apps/status", token=token, app_id=app_id,
                                   params={"appId": app_id})
        return parse_app_status(body or {})

    async def upsert_app(self, token: str, manifest: AppManifest, grants: dict[str, str]) -> None:
        await self._request("POST", "/api/v1/apps/upsert", token=token, app_id=manifest.app_id, json={
            "appId": manifest.app_id,
            "name": manifest.name,
            "description": manifest.description,
            "pictureUrl": manifest.picture_url,
            "permissions": list(manifest.permissions),
            "grants": grants,
        })

    # =========================================================================
    # Identity
    # =========================================================================

    async def claim(self, did: str, claim_code: str, signature: str) -> str:
        """Exchange a signed claim code for a JWT."""
        body = await self._request("POST", "/api/v1/admin/claim",
                                   json={"did": did, "claimCode": claim_code, "signature": signature})
        return parse_claim_response(body or {})
