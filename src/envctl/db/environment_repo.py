"""Supabase-backed environment repository.

Implements the EnvironmentRepository protocol against the ``environments``
table. Slug uniqueness is enforced by a unique index; a conflicting insert
surfaces as SupabaseConflictError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from envctl.environments.model import EnvironmentRecord

from .supabase_client import SupabaseClient, ilike_any

TABLE = "environments"
SEARCH_COLUMNS = ("slug", "hostname", "owner_id")


def _serialise(fields: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in fields.items()
    }


def _search_params(search: str | None) -> dict[str, str]:
    return {"or": ilike_any(SEARCH_COLUMNS, search)} if search else {}


class SupabaseEnvironmentRepository:
    """Environment CRUD backed by Supabase PostgREST."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def find(self, environment_id: str) -> EnvironmentRecord | None:
        rows = await self._client.select(TABLE, {"id": environment_id}, limit=1)
        return EnvironmentRecord.from_dict(rows[0]) if rows else None

    async def find_by_slug(self, slug: str) -> EnvironmentRecord | None:
        rows = await self._client.select(TABLE, {"slug": slug}, limit=1)
        return EnvironmentRecord.from_dict(rows[0]) if rows else None

    async def create(self, record: EnvironmentRecord) -> EnvironmentRecord:
        rows = await self._client.insert(TABLE, record.to_dict())
        return EnvironmentRecord.from_dict(rows[0]) if rows else record

    async def update(
        self,
        environment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> EnvironmentRecord | None:
        filters: dict[str, Any] = {"id": environment_id}
        if expected_status is not None:
            filters["status"] = expected_status
        rows = await self._client.update(TABLE, filters, _serialise(fields))
        return EnvironmentRecord.from_dict(rows[0]) if rows else None

    async def delete(self, environment_id: str) -> bool:
        rows = await self._client.delete(TABLE, {"id": environment_id})
        return bool(rows)

    async def count(
        self, *, status: str | None = None, search: str | None = None,
    ) -> int:
        filters = {"status": status} if status else None
        return await self._client.count(TABLE, filters, extra_params=_search_params(search))

    async def list(
        self,
        *,
        owner_id: str | None = None,
        status: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[EnvironmentRecord]:
        filters: dict[str, Any] = {}
        if owner_id is not None:
            filters["owner_id"] = owner_id
        if status is not None:
            filters["status"] = status
        rows = await self._client.select(
            TABLE,
            filters,
            limit=limit,
            offset=offset,
            order="created_at.desc",
            extra_params=_search_params(search),
        )
        return [EnvironmentRecord.from_dict(row) for row in rows]
