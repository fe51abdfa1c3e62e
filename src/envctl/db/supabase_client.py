"""Async PostgREST client wrapper for Supabase.

This is the single point of Supabase HTTP interaction for envctl repositories.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import httpx

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)

logger = logging.getLogger(__name__)

Filters = Sequence["PostgrestFilter"] | Mapping[str, tuple[str, Any] | Any] | None

# Module-level shared client for connection pooling in app runtimes/tests.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


@dataclass(frozen=True, slots=True)
class SelectPage:
    """Rows plus the exact total reported through ``Content-Range``."""

    rows: list[dict[str, Any]]
    total: int


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = [json.dumps(v) if isinstance(v, str) else "null" if v is None else str(v) for v in value]
        return f"({','.join(items)})"

    if value is None:
        raise ValueError(f"{op} does not support None; use op='is' with value=None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filters_to_params(filters: Filters) -> dict[str, str]:
    if not filters:
        return {}

    params: dict[str, str] = {}
    if isinstance(filters, Mapping):
        items: Iterable[tuple[str, tuple[str, Any] | Any]] = filters.items()
        for col, spec in items:
            op, val = spec if isinstance(spec, tuple) and len(spec) == 2 else ("eq", spec)
            params[str(col)] = f"{op}.{_encode_filter_value(str(op), val)}"
        return params

    for f in filters:
        params[f.column] = f"{f.op}.{_encode_filter_value(f.op, f.value)}"
    return params


def ilike_any(columns: Sequence[str], term: str) -> str:
    """Build an ``or=(...)`` value matching ``term`` case-insensitively in any column."""
    # PostgREST reserves these inside logic trees.
    cleaned = "".join(ch for ch in term if ch not in ',()*"\\')
    return "(" + ",".join(f"{col}.ilike.*{cleaned}*" for col in columns) + ")"


def _parse_content_range_total(header: str | None) -> int | None:
    # "0-24/3573" or "*/0"
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class SupabaseClient:
    """Minimal async PostgREST client (service role) with typed results."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        return {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        err_cls: type[SupabaseError]
        if resp.status_code in (401, 403):
            err_cls = SupabaseAuthError
        elif resp.status_code == 404:
            err_cls = SupabaseNotFoundError
        elif resp.status_code == 409:
            err_cls = SupabaseConflictError
        else:
            err_cls = SupabaseError

        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
            hint=hint,
        )

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = self._auth_headers()
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = await self._client.request(
                method,
                f"{self.base_rest_url}/{table}",
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("PostgREST %s %s failed: %s", method, table, exc)
            raise SupabaseError(status_code=0, message=str(exc)) from exc
        self._raise_for_error(resp)
        return resp

    @staticmethod
    def _rows(resp: httpx.Response, operation: str) -> list[dict[str, Any]]:
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(status_code=500, message=f"expected list response from {operation}")
        return payload

    def _select_params(
        self,
        filters: Filters,
        *,
        columns: str,
        limit: int | None,
        offset: int | None,
        order: str | None,
        extra_params: Mapping[str, str] | None,
    ) -> dict[str, str]:
        params = _filters_to_params(filters)
        params.update(extra_params or {})
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if offset:
            params["offset"] = str(int(offset))
        if order:
            params["order"] = order
        return params

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        offset: int | None = None,
        order: str | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        params = self._select_params(
            filters, columns=columns, limit=limit, offset=offset, order=order,
            extra_params=extra_params,
        )
        resp = await self._send("GET", table, params=params)
        return self._rows(resp, "select")

    async def select_page(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        offset: int | None = None,
        order: str | None = None,
        extra_params: Mapping[str, str] | None = None,
    ) -> SelectPage:
        """Like ``select`` but also returns the exact match count."""
        params = self._select_params(
            filters, columns=columns, limit=limit, offset=offset, order=order,
            extra_params=extra_params,
        )
        resp = await self._send("GET", table, params=params, prefer="count=exact")
        rows = self._rows(resp, "select")
        total = _parse_content_range_total(resp.headers.get("content-range"))
        return SelectPage(rows=rows, total=len(rows) if total is None else total)

    async def count(
        self,
        table: str,
        filters: Filters = None,
        *,
        extra_params: Mapping[str, str] | None = None,
    ) -> int:
        page = await self.select_page(
            table, filters, columns="id", limit=0, extra_params=extra_params,
        )
        return page.total

    async def insert(
        self,
        table: str,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        resp = await self._send("POST", table, json_body=data, prefer="return=representation")
        return self._rows(resp, "insert")

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        resp = await self._send(
            "PATCH",
            table,
            params=_filters_to_params(filters),
            json_body=data,
            prefer="return=representation",
        )
        return self._rows(resp, "update")

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        resp = await self._send(
            "DELETE", table, params=_filters_to_params(filters), prefer="return=representation",
        )
        return self._rows(resp, "delete")
