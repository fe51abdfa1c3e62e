"""Environment status state-machine tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from envctl.environments.model import (
    DELETING,
    ENVIRONMENT_STATUSES,
    ERROR,
    PENDING,
    PROVISIONING,
    RUNNING,
    STOPPED,
    EnvironmentRecord,
)
from envctl.environments.state_machine import (
    ALLOWED_TRANSITIONS,
    can_transition,
    check_transition,
    retry_from_error,
    touch,
    transition,
)
from envctl.errors import EnvironmentNotFound, InvalidStatusTransition, StateError
from envctl.inmemory import InMemoryEnvironmentRepository


def _t(seconds: int) -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def _record(**overrides) -> EnvironmentRecord:
    fields = dict(
        id='env-1',
        slug='brave-tiger',
        hostname='brave-tiger.example.test',
        owner_id='user-1',
        plan='solo',
        created_at=_t(0),
        updated_at=_t(0),
    )
    fields.update(overrides)
    return EnvironmentRecord(**fields)


async def _stored(status: str = PENDING, **fields) -> tuple[InMemoryEnvironmentRepository, EnvironmentRecord]:
    repo = InMemoryEnvironmentRepository()
    record = await repo.create(_record(status=status, **fields))
    return repo, record


class InterleavingRepository(InMemoryEnvironmentRepository):
    """Changes the stored status once, right before the next update lands."""

    interleave: str | None = None

    async def update(self, environment_id, fields, *, expected_status=None):
        if self.interleave is not None:
            current = self._records[environment_id]
            self._records[environment_id] = replace(current, status=self.interleave)
            self.interleave = None
        return await super().update(environment_id, fields, expected_status=expected_status)


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(ENVIRONMENT_STATUSES)

    def test_deleting_is_terminal(self):
        assert ALLOWED_TRANSITIONS[DELETING] == frozenset()

    @pytest.mark.parametrize('status', [PENDING, PROVISIONING, RUNNING, STOPPED, ERROR])
    def test_every_live_status_can_be_deleted(self, status):
        assert can_transition(status, DELETING)

    @pytest.mark.parametrize('from_status,to_status', [
        (PENDING, RUNNING),
        (RUNNING, PENDING),
        (RUNNING, PROVISIONING),
        (STOPPED, ERROR),
        (RUNNING, ERROR),
        (DELETING, PENDING),
        (ERROR, RUNNING),
    ])
    def test_rejected_edges(self, from_status, to_status):
        with pytest.raises(InvalidStatusTransition) as exc_info:
            check_transition(from_status, to_status)
        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status

    def test_invalid_transition_is_a_state_error(self):
        with pytest.raises(StateError):
            check_transition('unknown', PENDING)

    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            ALLOWED_TRANSITIONS[PENDING] = frozenset()  # type: ignore[index]


class TestTransition:
    @pytest.mark.asyncio
    async def test_persists_status_and_fields(self):
        repo, record = await _stored()
        updated = await transition(
            repo, record, PROVISIONING, now=_t(10), provider_instance_id='42',
        )
        assert updated.status == PROVISIONING
        assert updated.provider_instance_id == '42'
        assert updated.updated_at == _t(10)
        assert (await repo.find('env-1')) == updated

    @pytest.mark.asyncio
    async def test_invalid_edge_leaves_record_untouched(self):
        repo, record = await _stored(RUNNING)
        with pytest.raises(InvalidStatusTransition):
            await transition(repo, record, PENDING)
        assert (await repo.find('env-1')).status == RUNNING

    @pytest.mark.asyncio
    async def test_error_carries_message(self):
        repo, record = await _stored()
        updated = await transition(repo, record, ERROR, error_message='boom')
        assert updated.status == ERROR
        assert updated.error_message == 'boom'

    @pytest.mark.asyncio
    async def test_vanished_record_raises_not_found(self):
        repo, record = await _stored()
        await repo.delete(record.id)
        with pytest.raises(EnvironmentNotFound):
            await transition(repo, record, DELETING, now=_t(5))

    @pytest.mark.asyncio
    async def test_stale_copy_is_checked_against_stored_status(self):
        repo, record = await _stored()
        await transition(repo, record, DELETING)

        with pytest.raises(InvalidStatusTransition) as exc_info:
            await transition(repo, record, PROVISIONING, provider_instance_id='42')

        assert exc_info.value.from_status == DELETING
        stored = await repo.find('env-1')
        assert stored.status == DELETING
        assert stored.provider_instance_id is None

    @pytest.mark.asyncio
    async def test_stale_copy_may_take_an_edge_the_stored_status_allows(self):
        repo, record = await _stored()
        await transition(repo, record, PROVISIONING)

        updated = await transition(repo, record, DELETING)

        assert updated.status == DELETING

    @pytest.mark.asyncio
    async def test_status_change_between_read_and_write_is_rejected(self):
        repo = InterleavingRepository()
        record = await repo.create(_record())
        repo.interleave = DELETING

        with pytest.raises(InvalidStatusTransition) as exc_info:
            await transition(repo, record, PROVISIONING)

        assert exc_info.value.from_status == DELETING
        assert (await repo.find('env-1')).status == DELETING


class TestTouch:
    @pytest.mark.asyncio
    async def test_updates_fields_without_changing_status(self):
        repo, record = await _stored(PROVISIONING)
        updated = await touch(repo, record, ipv4='10.0.0.5', now=_t(3))
        assert updated.status == PROVISIONING
        assert updated.ipv4 == '10.0.0.5'

    @pytest.mark.asyncio
    async def test_keeps_a_concurrently_written_status(self):
        repo, record = await _stored(PROVISIONING)
        await transition(repo, record, DELETING)

        await touch(repo, record, ipv4='10.0.0.5')

        stored = await repo.find('env-1')
        assert stored.status == DELETING
        assert stored.ipv4 == '10.0.0.5'

    @pytest.mark.asyncio
    async def test_refuses_status(self):
        repo, record = await _stored(PROVISIONING)
        with pytest.raises(ValueError):
            await touch(repo, record, status=RUNNING)


class TestRetryFromError:
    @pytest.mark.asyncio
    async def test_moves_back_to_pending_and_clears_message(self):
        repo, record = await _stored(ERROR, error_message='create failed')
        retried = await retry_from_error(repo, record)
        assert retried.status == PENDING
        assert retried.error_message is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', [PENDING, PROVISIONING, RUNNING, DELETING])
    async def test_only_from_error(self, status):
        repo, record = await _stored(status)
        with pytest.raises(InvalidStatusTransition):
            await retry_from_error(repo, record)


class TestRecordSerialisation:
    def test_to_dict_uses_iso_timestamps(self):
        data = _record().to_dict()
        assert data['created_at'] == '2026-03-02T12:00:00+00:00'
        assert data['status'] == PENDING
        assert data['provider_instance_id'] is None

    def test_from_dict_accepts_postgrest_rows(self):
        row = {
            **_record().to_dict(),
            'provider_instance_id': 203948,
            'updated_at': '2026-03-02T12:05:00Z',
            'extra_column': 'ignored',
        }
        record = EnvironmentRecord.from_dict(row)
        assert record.provider_instance_id == '203948'
        assert record.updated_at == _t(300)
        assert record.created_at.tzinfo is not None
