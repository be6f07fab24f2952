from datetime import datetime
from uuid import uuid4

import pytest

from opinion_map.core.exceptions import (
    ActiveSessionExistsError,
    InvalidSessionTransition,
    SessionNotFoundError,
)
from opinion_map.models import SessionStatus
from opinion_map.services.sessions import SessionService, build_session_id


def _config(count: int = 3) -> dict:
    return {"sampled_post_ids": [str(uuid4()) for _ in range(count)], "sampling_strategy": "all"}


def test_build_session_id_embeds_zone_and_time():
    zone_id = uuid4()

    session_id = build_session_id(zone_id, datetime(2025, 1, 1, 12, 30, 0, 123456))

    assert session_id == f"zone_{zone_id}_2025-01-01T12:30:00.123456Z"


@pytest.mark.asyncio
async def test_create_session_starts_pending(session, zone):
    record = await SessionService().create_session(session, zone_id=zone.id, config=_config(4), created_by="u-1")

    assert record.status == SessionStatus.PENDING
    assert record.progress == 0
    assert record.total_posts == 4
    assert record.created_by == "u-1"
    assert record.session_id.startswith(f"zone_{zone.id}_")
    assert record.started_at is None


@pytest.mark.asyncio
async def test_second_active_session_is_rejected(session, zone):
    service = SessionService()
    first = await service.create_session(session, zone_id=zone.id, config=_config())

    with pytest.raises(ActiveSessionExistsError):
        await service.create_session(session, zone_id=zone.id, config=_config())

    reused, created = await service.create_or_reuse_session(session, zone_id=zone.id, config=_config())
    assert not created
    assert reused.session_id == first.session_id


@pytest.mark.asyncio
async def test_progress_is_clamped_and_never_lowered(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())

    record = await service.update_progress(session, record.session_id, status=SessionStatus.VECTORIZING, progress=40)
    assert record.started_at is not None
    record = await service.update_progress(session, record.session_id, progress=30, message="late update")
    assert record.progress == 40
    assert record.phase_message == "late update"
    record = await service.update_progress(session, record.session_id, progress=250)
    assert record.progress == 100


@pytest.mark.asyncio
async def test_phases_cannot_move_backwards(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())
    await service.update_progress(session, record.session_id, status=SessionStatus.CLUSTERING, progress=60)

    with pytest.raises(InvalidSessionTransition):
        await service.update_progress(session, record.session_id, status=SessionStatus.REDUCING)
    with pytest.raises(InvalidSessionTransition):
        await service.update_progress(session, record.session_id, status="exploding")


@pytest.mark.asyncio
async def test_completed_session_is_immutable(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())
    await service.update_progress(session, record.session_id, status=SessionStatus.VECTORIZING, progress=10)

    record = await service.update_progress(session, record.session_id, status=SessionStatus.COMPLETED, progress=90)

    assert record.progress == 100
    assert record.completed_at is not None
    assert record.execution_time_ms is not None and record.execution_time_ms >= 0
    with pytest.raises(InvalidSessionTransition):
        await service.update_progress(session, record.session_id, progress=50)
    with pytest.raises(InvalidSessionTransition):
        await service.cancel_session(session, record.session_id)

    failed = await service.mark_failed(session, record.session_id, "too late")
    assert failed.status == SessionStatus.COMPLETED
    assert failed.error_message is None


@pytest.mark.asyncio
async def test_mark_failed_records_error(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())

    record = await service.mark_failed(session, record.session_id, "boom", "Traceback ...")

    assert record.status == SessionStatus.FAILED
    assert record.error_message == "boom"
    assert record.error_detail == "Traceback ..."
    assert record.phase_message == "Failed: boom"
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_frees_the_zone(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())

    cancelled = await service.cancel_session(session, record.session_id)
    again = await service.cancel_session(session, record.session_id)

    assert cancelled.status == SessionStatus.CANCELLED
    assert again.status == SessionStatus.CANCELLED
    assert await service.is_cancelled(session, record.session_id)
    assert await service.get_running_session(session, zone.id) is None

    latest = await service.get_latest_session(session, zone.id)
    assert latest.session_id == record.session_id


@pytest.mark.asyncio
async def test_retry_copies_configuration(session, zone):
    service = SessionService()
    config = _config(5)
    record = await service.create_session(session, zone_id=zone.id, config=config, created_by="analyst")
    await service.mark_failed(session, record.session_id, "upstream outage")

    retried = await service.retry_session(session, record.session_id)

    assert retried.session_id != record.session_id
    assert retried.status == SessionStatus.PENDING
    assert retried.config["sampled_post_ids"] == config["sampled_post_ids"]
    assert retried.config["retry_of"] == record.session_id
    assert retried.created_by == "analyst"
    assert retried.total_posts == 5

    with pytest.raises(InvalidSessionTransition):
        await service.retry_session(session, retried.session_id)


@pytest.mark.asyncio
async def test_unknown_session_raises(session):
    service = SessionService()

    with pytest.raises(SessionNotFoundError):
        await service.get_session(session, "zone_missing")
    with pytest.raises(SessionNotFoundError):
        await service.is_cancelled(session, "zone_missing")


@pytest.mark.asyncio
async def test_record_aggregates_rejects_unknown_fields(session, zone):
    service = SessionService()
    record = await service.create_session(session, zone_id=zone.id, config=_config())

    updated = await service.record_aggregates(session, record.session_id, vectorized_posts=3, explained_variance=0.7)
    assert updated.vectorized_posts == 3
    assert updated.explained_variance == pytest.approx(0.7)

    with pytest.raises(ValueError):
        await service.record_aggregates(session, record.session_id, status=SessionStatus.COMPLETED)
