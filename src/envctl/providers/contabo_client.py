"""Async HTTP client for the Contabo compute API.

Implements the ComputeGateway protocol: instance lifecycle, image listing and
SSH secrets. Auth is an OAuth2 password grant whose bearer token is cached
by ``BearerTokenCache``. Every request carries a fresh UUID4
``x-request-id`` header, which the API requires.

The client never retries; retry policy belongs to the job queue.
"""

from __future__ import annotations

import base64
import logging
import uuid
from typing import Any, Mapping

import httpx

from envctl.errors import AuthenticationError, ProviderAPIError
from envctl.observability.metrics import PROVIDER_REQUESTS_TOTAL

from .credentials import BearerTokenCache, IssuedToken

logger = logging.getLogger(__name__)

PROVIDER = "contabo"

DEFAULT_API_URL = "https://api.contabo.com"
DEFAULT_AUTH_URL = "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"

# Minimum billing period accepted by the API, in months.
BILLING_PERIOD_MONTHS = 1


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def encode_user_data(script: str) -> str:
    return base64.b64encode(script.encode("utf-8")).decode("ascii")


def _error_message(resp: httpx.Response) -> str:
    body = resp.text
    message = body[:200] if body else f"HTTP {resp.status_code}"
    try:
        payload = resp.json()
        if isinstance(payload, dict):
            message = (
                payload.get("message")
                or payload.get("error_description")
                or payload.get("error")
                or message
            )
    except ValueError:
        pass
    return str(message)


# ── Client ───────────────────────────────────────────────────────


class ContaboClient:
    """Async client for the Contabo compute REST API."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        api_user: str,
        api_password: str,
        base_url: str = DEFAULT_API_URL,
        auth_url: str = DEFAULT_AUTH_URL,
        plan_products: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        token_cache: BearerTokenCache | None = None,
    ) -> None:
        missing = [
            name for name, value in (
                ("client_id", client_id),
                ("client_secret", client_secret),
                ("api_user", api_user),
                ("api_password", api_password),
            ) if not value
        ]
        if missing:
            raise ValueError(f"missing Contabo credentials: {', '.join(missing)}")

        self._credentials = {
            "client_id": client_id,
            "client_secret": client_secret,
            "username": api_user,
            "password": api_password,
            "grant_type": "password",
        }
        self._base_url = base_url.rstrip("/")
        self._auth_url = auth_url
        self._plan_products = dict(plan_products or {})
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._tokens = token_cache or BearerTokenCache(self._issue_token)

    # ── Auth ─────────────────────────────────────────────────────

    async def _issue_token(self) -> IssuedToken:
        try:
            resp = await self._client.post(
                self._auth_url,
                data=self._credentials,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError(str(exc)) from exc

        if resp.status_code >= 400:
            raise AuthenticationError(_error_message(resp), status_code=resp.status_code)
        try:
            payload = resp.json()
            token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthenticationError("malformed token response") from exc
        if not token:
            raise AuthenticationError("token endpoint returned no access token")
        return IssuedToken(access_token=token, expires_in=expires_in)

    async def authenticate(self) -> str:
        """Return a valid bearer token, refreshing it when close to expiry."""
        return await self._tokens.get()

    # ── Transport ────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        token = await self.authenticate()
        headers = {
            "Authorization": f"Bearer {token}",
            "x-request-id": str(uuid.uuid4()),
        }
        try:
            resp = await self._client.request(
                method,
                f"{self._base_url}{path}",
                headers=headers,
                json=json,
                params=params,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            logger.warning("Contabo %s %s failed: %s", method, path, exc)
            raise ProviderAPIError(PROVIDER, 0, str(exc)) from exc

        if resp.status_code >= 400:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            message = _error_message(resp)
            logger.warning("Contabo %s %s returned %d: %s", method, path, resp.status_code, message)
            raise ProviderAPIError(
                PROVIDER, resp.status_code, message, response_body=resp.text,
            )

        if not resp.content:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="ok").inc()
            return None
        try:
            payload = resp.json()
        except ValueError as exc:
            PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="error").inc()
            raise ProviderAPIError(
                PROVIDER, resp.status_code, "response is not JSON", response_body=resp.text,
            ) from exc
        PROVIDER_REQUESTS_TOTAL.labels(provider=PROVIDER, outcome="ok").inc()
        return payload

    @staticmethod
    def _data(payload: Any) -> list[dict[str, Any]]:
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, list) else []

    # ── Catalog ──────────────────────────────────────────────────

    async def list_images(self) -> list[dict[str, Any]]:
        return self._data(await self._request("GET", "/v1/compute/images"))

    def plan_products(self) -> list[dict[str, str]]:
        """Static plan -> product catalog (the API has no product listing)."""
        return [
            {"plan": plan, "productId": product_id}
            for plan, product_id in self._plan_products.items()
        ]

    # ── Secrets ──────────────────────────────────────────────────

    async def list_secrets(self, secret_type: str | None = None) -> list[dict[str, Any]]:
        params = {"type": secret_type} if secret_type else None
        return self._data(await self._request("GET", "/v1/secrets", params=params))

    async def create_secret(self, *, name: str, value: str, secret_type: str) -> dict[str, Any]:
        payload = await self._request(
            "POST", "/v1/secrets", json={"name": name, "value": value, "type": secret_type},
        )
        rows = self._data(payload)
        if not rows:
            raise ProviderAPIError(PROVIDER, 500, "create secret returned no data")
        return rows[0]

    async def get_or_create_ssh_secret(self, name: str, public_key: str) -> int:
        """Return the id of the SSH secret called ``name``, creating it if needed."""
        for secret in await self.list_secrets("ssh"):
            if secret.get("name") == name:
                return int(secret["secretId"])
        created = await self.create_secret(name=name, value=public_key, secret_type="ssh")
        logger.info("Created SSH secret %s", name)
        return int(created["secretId"])

    # ── Instances ────────────────────────────────────────────────

    async def list_instances(self) -> list[dict[str, Any]]:
        return self._data(await self._request("GET", "/v1/compute/instances"))

    async def create_instance(
        self,
        *,
        product_id: str,
        region: str,
        image_id: str,
        display_name: str,
        user_data: str = "",
        ssh_keys: list[int] | None = None,
    ) -> str:
        """Create an instance and return its provider handle.

        ``user_data`` is the plain bootstrap script; it is base64-encoded here.
        """
        payload = await self._request(
            "POST",
            "/v1/compute/instances",
            json={
                "productId": product_id,
                "region": region,
                "imageId": image_id,
                "displayName": display_name,
                "userData": encode_user_data(user_data),
                "period": BILLING_PERIOD_MONTHS,
                "sshKeys": list(ssh_keys or []),
            },
        )
        rows = self._data(payload)
        if not rows or rows[0].get("instanceId") is None:
            raise ProviderAPIError(PROVIDER, 500, "create instance returned no instanceId")
        return str(rows[0]["instanceId"])

    async def get_instance(self, instance_id: str) -> dict[str, Any]:
        rows = self._data(await self._request("GET", f"/v1/compute/instances/{instance_id}"))
        if not rows:
            raise ProviderAPIError(PROVIDER, 404, f"instance {instance_id} not found")
        return rows[0]

    async def get_instance_status(self, instance_id: str) -> str:
        instance = await self.get_instance(instance_id)
        return str(instance.get("status", ""))

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/v1/compute/instances/{instance_id}")
        logger.info("Deleted instance %s", instance_id)
