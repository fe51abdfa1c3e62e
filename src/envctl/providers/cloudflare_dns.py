"""Async client for Cloudflare DNS (v4 REST API).

Implements the DnsGateway protocol: A-record CRUD scoped to one zone. Records
are created with the bare slug as name (Cloudflare appends the zone) and
looked up by the fully qualified ``<slug>.<domain>``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from envctl.errors import ProviderAPIError
from envctl.observability.metrics import PROVIDER_REQUESTS_TOTAL

logger = logging.getLogger(__name__)

PROVIDER = "cloudflare"

DEFAULT_TTL_SECONDS = 300
DEFAULT_RECORD_TYPE = "A"

# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if errors:
        return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
    return f"HTTP {resp.status_code}"


class CloudflareDNSClient:
    """A-record management for environment hostnames."""

    def __init__(
        self,
        *,
        api_token: str,
        zone_id: str,
        domain: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        ttl: int = DEFAULT_TTL_SECONDS,
        proxied: bool = False,
    ) -> None:
        if not api_token:
            raise ValueError("api_token is required")
        if not zone_id:
            raise ValueError("zone_id is required")
        if not domain:
            raise ValueError("domain is required")

        self._api_token = api_token
        self._zone_id = zone_id
        self._domain = domain.strip(".")
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._ttl = ttl
        self._proxied = proxied

    def fqdn(self, slug: str) -> str:
        return f"{slug}.{self._domain}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}/zones/{self._zone_id}{path}"
        try:
            resp = await self._client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {self._api_token}"},
                json=json,
                params=params,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            raise ProviderAPIError(PROVIDER, 0, str(exc)) from exc

        if resp.status_code >= 400:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            raise ProviderAPIError(
                PROVIDER, resp.status_code, _error_message(resp), response_body=resp.text,
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            raise ProviderAPIError(
                PROVIDER, resp.status_code, "response is not JSON", response_body=resp.text,
            ) from exc
        PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="ok").inc()
        if isinstance(payload, dict) and payload.get("success") is False:
            raise ProviderAPIError(PROVIDER, resp.status_code, _error_message(resp))
        return payload.get("result") if isinstance(payload, dict) else None

    def _record_body(self, slug: str, ipv4: str) -> dict[str, Any]:
        return {
            "type": DEFAULT_RECORD_TYPE,
            "name": slug,
            "content": ipv4,
            "ttl": self._ttl,
            "proxied": self._proxied,
        }

    async def create_a_record(self, slug: str, ipv4: str) -> dict[str, Any]:
        """Create ``<slug>.<domain> -> ipv4``. No duplicate pre-check."""
        record = await self._request("POST", "/dns_records", json=self._record_body(slug, ipv4))
        logger.info("DNS A record created: %s -> %s (id=%s)", self.fqdn(slug), ipv4, record.get("id"))
        return record

    async def find_a_records(self, slug: str) -> list[dict[str, Any]]:
        result = await self._request(
            "GET",
            "/dns_records",
            params={"type": DEFAULT_RECORD_TYPE, "name": self.fqdn(slug)},
        )
        return list(result or [])

    async def get_a_record(self, slug: str) -> dict[str, Any] | None:
        records = await self.find_a_records(slug)
        return records[0] if records else None

    async def update_a_record(self, slug: str, ipv4: str) -> dict[str, Any]:
        """Point the first matching record at ``ipv4``."""
        records = await self.find_a_records(slug)
        if not records:
            raise ProviderAPIError(PROVIDER, 404, f"no A record for {self.fqdn(slug)}")
        record_id = records[0]["id"]
        updated = await self._request(
            "PUT", f"/dns_records/{record_id}", json=self._record_body(slug, ipv4),
        )
        logger.info("DNS A record updated: %s -> %s", self.fqdn(slug), ipv4)
        return updated

    async def delete_a_record(self, slug: str) -> int:
        """Delete every A record for the slug. Returns how many were removed."""
        records = await self.find_a_records(slug)
        if not records:
            logger.warning("No DNS A record found for %s", self.fqdn(slug))
            return 0
        for record in records:
            await self._request("DELETE", f"/dns_records/{record['id']}")
            logger.info("DNS A record deleted: %s (id=%s)", self.fqdn(slug), record["id"])
        return len(records)

    async def list_records(self, record_type: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"per_page": limit}
        if record_type:
            params["type"] = record_type
        return list(await self._request("GET", "/dns_records", params=params) or [])

    async def get_zone_info(self) -> dict[str, Any]:
        return await self._request("GET", "") or {}
