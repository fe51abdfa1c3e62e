"""In-memory implementations for local development and tests.

Used when ENVIRONMENT=local. They satisfy the repository and gateway
protocols but keep everything in dicts (no persistence across restarts).
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from envctl.environments.model import EnvironmentRecord, utcnow
from envctl.errors import ProviderAPIError


def _matches_search(record: EnvironmentRecord, search: str | None) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(
        needle in value.lower()
        for value in (record.slug, record.hostname, record.owner_id)
    )


class InMemoryEnvironmentRepository:
    def __init__(self) -> None:
        self._records: dict[str, EnvironmentRecord] = {}

    async def find(self, environment_id: str) -> EnvironmentRecord | None:
        return self._records.get(environment_id)

    async def find_by_slug(self, slug: str) -> EnvironmentRecord | None:
        for record in self._records.values():
            if record.slug == slug:
                return record
        return None

    async def create(self, record: EnvironmentRecord) -> EnvironmentRecord:
        if record.id in self._records:
            raise ValueError(f'environment {record.id!r} already exists')
        self._records[record.id] = record
        return record

    async def update(
        self,
        environment_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> EnvironmentRecord | None:
        current = self._records.get(environment_id)
        if current is None:
            return None
        if expected_status is not None and current.status != expected_status:
            return None
        changes = {'updated_at': utcnow(), **fields}
        updated = replace(current, **changes)
        self._records[environment_id] = updated
        return updated

    async def delete(self, environment_id: str) -> bool:
        return self._records.pop(environment_id, None) is not None

    async def count(
        self, *, status: str | None = None, search: str | None = None,
    ) -> int:
        return len(self._select(status=status, search=search))

    async def list(
        self,
        *,
        owner_id: str | None = None,
        status: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[EnvironmentRecord]:
        rows = self._select(owner_id=owner_id, status=status, search=search)
        # Newest first, like the PostgREST repository.
        rows.sort(key=lambda r: r.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def _select(
        self,
        *,
        owner_id: str | None = None,
        status: str | None = None,
        search: str | None = None,
    ) -> list[EnvironmentRecord]:
        return [
            r for r in self._records.values()
            if (owner_id is None or r.owner_id == owner_id)
            and (status is None or r.status == status)
            and _matches_search(r, search)
        ]


class InMemoryComputeGateway:
    """Local stand-in for the compute provider.

    Instances get ``ipv4`` after ``address_after`` detail fetches and report
    ``running`` after ``running_after`` further fetches.
    """

    def __init__(
        self,
        *,
        ipv4: str = '127.0.0.1',
        address_after: int = 1,
        running_after: int = 1,
        images: list[dict[str, Any]] | None = None,
    ) -> None:
        self.ipv4 = ipv4
        self.address_after = address_after
        self.running_after = running_after
        self.images = images if images is not None else [
            {'imageId': 'local-ubuntu-22.04', 'name': 'ubuntu-22.04'},
        ]
        self.instances: dict[str, dict[str, Any]] = {}
        self.secrets: dict[str, int] = {}
        self._fetches: dict[str, int] = {}
        self._next_id = 1000

    async def list_images(self) -> list[dict[str, Any]]:
        return list(self.images)

    async def get_or_create_ssh_secret(self, name: str, public_key: str) -> int:
        if name not in self.secrets:
            self.secrets[name] = len(self.secrets) + 1
        return self.secrets[name]

    async def create_instance(
        self,
        *,
        product_id: str,
        region: str,
        image_id: str,
        display_name: str,
        user_data: str = '',
        ssh_keys: list[int] | None = None,
    ) -> str:
        self._next_id += 1
        instance_id = str(self._next_id)
        self.instances[instance_id] = {
            'instanceId': instance_id,
            'productId': product_id,
            'region': region,
            'imageId': image_id,
            'displayName': display_name,
            'userData': user_data,
            'sshKeys': list(ssh_keys or []),
            'status': 'provisioning',
            'ipConfig': {},
        }
        self._fetches[instance_id] = 0
        return instance_id

    async def get_instance(self, instance_id: str) -> dict[str, Any]:
        instance = self.instances.get(instance_id)
        if instance is None:
            raise ProviderAPIError('local', 404, f'instance {instance_id} not found')
        self._fetches[instance_id] += 1
        fetches = self._fetches[instance_id]
        if fetches >= self.address_after:
            instance['ipConfig'] = {'v4': {'ip': self.ipv4}}
        if fetches >= self.address_after + self.running_after:
            instance['status'] = 'running'
        return dict(instance)

    async def get_instance_status(self, instance_id: str) -> str:
        return str((await self.get_instance(instance_id))['status'])

    async def delete_instance(self, instance_id: str) -> None:
        self.instances.pop(instance_id, None)
        self._fetches.pop(instance_id, None)


class InMemoryDnsGateway:
    def __init__(self) -> None:
        self.records: dict[str, list[str]] = {}

    async def create_a_record(self, slug: str, ipv4: str) -> dict[str, Any]:
        self.records.setdefault(slug, []).append(ipv4)
        return {'name': slug, 'content': ipv4, 'type': 'A'}

    async def delete_a_record(self, slug: str) -> int:
        return len(self.records.pop(slug, []))
