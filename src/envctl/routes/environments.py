"""Environment and operations API.

Tenant routes (owner from the ``X-Owner-Id`` header set by the upstream
auth layer):
  POST   /api/v1/environments                      -> create (202)
  GET    /api/v1/environments                      -> list own environments
  GET    /api/v1/environments/{id}                 -> one environment
  DELETE /api/v1/environments/{id}                 -> request teardown (202)
  POST   /api/v1/environments/{id}/status-check    -> enqueue live status check

Operator routes:
  GET /api/v1/operations/environments   -> paginated list, status/search filters
  GET /api/v1/operations/status-counts  -> counts per status
  GET /api/v1/operations/stuck          -> stuck pending/provisioning report

Domain errors are mapped to JSON by the handlers installed in ``main``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from envctl.environments.model import EnvironmentRecord
from envctl.environments.service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, EnvironmentService


# ── Request schemas ───────────────────────────────────────────────────


class CreateEnvironmentRequest(BaseModel):
    plan: str = Field(description='One of solo, team, enterprise.')


# ── Dependencies and helpers ──────────────────────────────────────────


async def get_owner_id(x_owner_id: str | None = Header(default=None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail='X-Owner-Id header is required')
    return x_owner_id.strip()


def _environment_response(record: EnvironmentRecord) -> dict:
    return record.to_dict()


# ── Route factories ───────────────────────────────────────────────────


def create_environments_router(service: EnvironmentService) -> APIRouter:
    router = APIRouter(prefix='/api/v1/environments', tags=['environments'])

    @router.post('', status_code=202)
    async def create_environment(
        body: CreateEnvironmentRequest,
        owner_id: str = Depends(get_owner_id),
    ):
        """Create an environment; provisioning continues in the background."""
        record = await service.create_environment(owner_id, body.plan)
        return _environment_response(record)

    @router.get('')
    async def list_environments(owner_id: str = Depends(get_owner_id)):
        records = await service.list_environments(owner_id)
        return {'environments': [_environment_response(r) for r in records]}

    @router.get('/{environment_id}')
    async def get_environment(environment_id: str, owner_id: str = Depends(get_owner_id)):
        return _environment_response(await service.get_environment(environment_id, owner_id))

    @router.delete('/{environment_id}', status_code=202)
    async def delete_environment(environment_id: str, owner_id: str = Depends(get_owner_id)):
        record = await service.delete_environment(environment_id, owner_id)
        return _environment_response(record)

    @router.post('/{environment_id}/status-check', status_code=202)
    async def request_status_check(environment_id: str, owner_id: str = Depends(get_owner_id)):
        job = await service.request_status_check(environment_id, owner_id)
        return {'job_id': job.id, 'queue': job.queue_name}

    return router


def create_operations_router(service: EnvironmentService) -> APIRouter:
    router = APIRouter(prefix='/api/v1/operations', tags=['operations'])

    @router.get('/environments')
    async def list_all_environments(
        status: str | None = None,
        search: str | None = None,
        offset: int = Query(default=0, ge=0),
        limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    ):
        page = await service.list_all(status=status, search=search, offset=offset, limit=limit)
        return {
            'environments': [_environment_response(r) for r in page.items],
            'total': page.total,
            'offset': page.offset,
            'limit': page.limit,
        }

    @router.get('/status-counts')
    async def status_counts():
        return await service.status_counts()

    @router.get('/stuck')
    async def stuck_environments():
        report = await service.find_stuck()
        return report.to_dict()

    return router
