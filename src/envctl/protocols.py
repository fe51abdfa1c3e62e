"""Repository and provider protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase/Contabo/Cloudflare for non-local) must
satisfy. The orchestrator and service accept any implementation that matches.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from envctl.environments.model import EnvironmentRecord


@runtime_checkable
class EnvironmentRepository(Protocol):
    """Environment record persistence.

    ``update`` overwrites the given fields and returns None when no row
    matched, either because the record is gone or because its status is not
    ``expected_status``.
    """

    async def find(self, environment_id: str) -> EnvironmentRecord | None: ...
    async def find_by_slug(self, slug: str) -> EnvironmentRecord | None: ...
    async def create(self, record: EnvironmentRecord) -> EnvironmentRecord: ...
    async def update(
        self,
        environment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> EnvironmentRecord | None: ...
    async def delete(self, environment_id: str) -> bool: ...
    async def count(
        self, *, status: str | None = None, search: str | None = None,
    ) -> int: ...
    async def list(
        self,
        *,
        owner_id: str | None = None,
        status: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[EnvironmentRecord]: ...


@runtime_checkable
class ComputeGateway(Protocol):
    """Compute instance lifecycle at the provider."""

    async def list_images(self) -> list[dict[str, Any]]: ...
    async def get_or_create_ssh_secret(self, name: str, public_key: str) -> int: ...
    async def create_instance(
        self,
        *,
        product_id: str,
        region: str,
        image_id: str,
        display_name: str,
        user_data: str = '',
        ssh_keys: list[int] | None = None,
    ) -> str: ...
    async def get_instance(self, instance_id: str) -> dict[str, Any]: ...
    async def get_instance_status(self, instance_id: str) -> str: ...
    async def delete_instance(self, instance_id: str) -> None: ...


@runtime_checkable
class DnsGateway(Protocol):
    """A-record management for environment hostnames."""

    async def create_a_record(self, slug: str, ipv4: str) -> dict[str, Any]: ...
    async def delete_a_record(self, slug: str) -> int: ...
