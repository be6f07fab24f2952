"""Persistence and lifecycle rules for opinion map sessions.

Classes:
    SessionService: Creates, reads and transitions ``OpinionSession`` rows.

Functions:
    build_session_id(zone_id, now): Stable run identifier for a zone and creation time.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from opinion_map.core.exceptions import (
    ActiveSessionExistsError,
    InvalidSessionTransition,
    SessionNotFoundError,
)
from opinion_map.models import (
    ACTIVE_STATUSES,
    STATUS_ORDER,
    TERMINAL_STATUSES,
    OpinionSession,
    SessionStatus,
)

_LOGGER = logging.getLogger(__name__)

_AGGREGATE_FIELDS = frozenset(
    {
        "total_posts",
        "vectorized_posts",
        "total_clusters",
        "outlier_count",
        "explained_variance",
        "timings",
    }
)
_RETRYABLE_STATUSES = (SessionStatus.FAILED, SessionStatus.CANCELLED)


def build_session_id(zone_id: UUID | str, now: Optional[datetime] = None) -> str:
    moment = now or datetime.utcnow()
    return f"zone_{zone_id}_{moment.isoformat(timespec='microseconds')}Z"


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class SessionService:
    async def _find(self, session, session_id: str) -> Optional[OpinionSession]:
        stmt = (
            select(OpinionSession)
            .where(OpinionSession.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        result = await session.exec(stmt)
        return result.scalars().first()

    async def get_session(self, session, session_id: str) -> OpinionSession:
        record = await self._find(session, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def get_latest_session(
        self,
        session,
        zone_id: UUID | str,
        *,
        status: Optional[str] = None,
    ) -> Optional[OpinionSession]:
        stmt = select(OpinionSession).where(OpinionSession.zone_id == _as_uuid(zone_id))
        if status is not None:
            stmt = stmt.where(OpinionSession.status == status)
        stmt = stmt.order_by(OpinionSession.created_at.desc()).limit(1)
        result = await session.exec(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def get_running_session(self, session, zone_id: UUID | str) -> Optional[OpinionSession]:
        stmt = (
            select(OpinionSession)
            .where(
                OpinionSession.zone_id == _as_uuid(zone_id),
                OpinionSession.status.in_(ACTIVE_STATUSES),
            )
            .order_by(OpinionSession.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await session.exec(stmt)
        return result.scalars().first()

    async def create_session(
        self,
        session,
        *,
        zone_id: UUID | str,
        config: dict[str, Any],
        created_by: Optional[str] = None,
    ) -> OpinionSession:
        """Insert a pending session; a zone may only have one active session."""

        zone_uuid = _as_uuid(zone_id)
        running = await self.get_running_session(session, zone_uuid)
        if running is not None:
            raise ActiveSessionExistsError(str(zone_uuid), running.session_id)

        record = OpinionSession(
            session_id=build_session_id(zone_uuid),
            zone_id=zone_uuid,
            status=SessionStatus.PENDING,
            progress=0,
            phase_message="Queued for processing",
            config=dict(config),
            total_posts=len(config.get("sampled_post_ids") or []),
            created_by=created_by,
        )
        session.add(record)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            # The partial unique index caught a concurrent insert.
            raise ActiveSessionExistsError(str(zone_uuid)) from exc
        await session.refresh(record)
        _LOGGER.info("Created opinion map session %s for zone %s", record.session_id, zone_uuid)
        return record

    async def create_or_reuse_session(
        self,
        session,
        *,
        zone_id: UUID | str,
        config: dict[str, Any],
        created_by: Optional[str] = None,
    ) -> tuple[OpinionSession, bool]:
        """Return ``(session, created)``, reusing the zone's active session if any."""

        running = await self.get_running_session(session, zone_id)
        if running is not None:
            _LOGGER.info("Reusing active session %s for zone %s", running.session_id, zone_id)
            return running, False
        try:
            return await self.create_session(session, zone_id=zone_id, config=config, created_by=created_by), True
        except ActiveSessionExistsError:
            running = await self.get_running_session(session, zone_id)
            if running is None:
                raise
            return running, False

    async def update_progress(
        self,
        session,
        session_id: str,
        *,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        message: Optional[str] = None,
    ) -> OpinionSession:
        """Persist a status/progress change.

        Progress is clamped to ``[0, 100]`` and never lowered. A terminal session
        cannot move, and an active session cannot go back to an earlier phase.
        """

        record = await self.get_session(session, session_id)
        if record.is_terminal:
            raise InvalidSessionTransition(
                f"Session {session_id} is {record.status} and can no longer be updated"
            )

        now = datetime.utcnow()
        if status is not None and status != record.status:
            if status in ACTIVE_STATUSES and STATUS_ORDER[status] < STATUS_ORDER[record.status]:
                raise InvalidSessionTransition(
                    f"Session {session_id} cannot move from {record.status} back to {status}"
                )
            if status not in ACTIVE_STATUSES and status not in TERMINAL_STATUSES:
                raise InvalidSessionTransition(f"Unknown session status {status!r}")
            record.status = status
            if status != SessionStatus.PENDING and record.started_at is None:
                record.started_at = now

        if progress is not None:
            clamped = max(0, min(100, int(progress)))
            record.progress = max(record.progress or 0, clamped)
        if message is not None:
            record.phase_message = message

        if record.status == SessionStatus.COMPLETED:
            record.progress = 100
            record.completed_at = now
            began = record.started_at or record.created_at
            record.execution_time_ms = int((now - began).total_seconds() * 1000)
        elif record.status in TERMINAL_STATUSES:
            record.completed_at = now

        session.add(record)
        await session.commit()
        await session.refresh(record)
        return record

    async def record_aggregates(self, session, session_id: str, **values: Any) -> OpinionSession:
        unknown = set(values) - _AGGREGATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session aggregates: {sorted(unknown)}")
        record = await self.get_session(session, session_id)
        for key, value in values.items():
            setattr(record, key, value)
        session.add(record)
        await session.commit()
        await session.refresh(record)
        return record

    async def mark_failed(
        self,
        session,
        session_id: str,
        message: str,
        detail: Optional[str] = None,
    ) -> OpinionSession:
        record = await self.get_session(session, session_id)
        if record.is_terminal:
            _LOGGER.warning(
                "Not marking session %s failed; it is already %s", session_id, record.status
            )
            return record
        now = datetime.utcnow()
        record.status = SessionStatus.FAILED
        record.error_message = message
        record.error_detail = detail
        record.phase_message = f"Failed: {message}"
        record.completed_at = now
        began = record.started_at or record.created_at
        record.execution_time_ms = int((now - began).total_seconds() * 1000)
        session.add(record)
        await session.commit()
        await session.refresh(record)
        _LOGGER.error("Opinion map session %s failed: %s", session_id, message)
        return record

    async def cancel_session(self, session, session_id: str) -> OpinionSession:
        record = await self.get_session(session, session_id)
        if record.status == SessionStatus.CANCELLED:
            return record
        if record.is_terminal:
            raise InvalidSessionTransition(
                f"Session {session_id} is {record.status} and cannot be cancelled"
            )
        record.status = SessionStatus.CANCELLED
        record.phase_message = "Cancelled by user"
        record.completed_at = datetime.utcnow()
        session.add(record)
        await session.commit()
        await session.refresh(record)
        _LOGGER.info("Cancelled opinion map session %s", session_id)
        return record

    async def is_cancelled(self, session, session_id: str) -> bool:
        stmt = select(OpinionSession.status).where(OpinionSession.session_id == session_id)
        status = (await session.exec(stmt)).scalar_one_or_none()
        if status is None:
            raise SessionNotFoundError(session_id)
        return status == SessionStatus.CANCELLED

    async def retry_session(
        self,
        session,
        session_id: str,
        *,
        created_by: Optional[str] = None,
    ) -> OpinionSession:
        """Start a fresh session from a failed or cancelled one's configuration."""

        previous = await self.get_session(session, session_id)
        if previous.status not in _RETRYABLE_STATUSES:
            raise InvalidSessionTransition(
                f"Only failed or cancelled sessions can be retried; {session_id} is {previous.status}"
            )
        config = dict(previous.config or {})
        config["retry_of"] = previous.session_id
        return await self.create_session(
            session,
            zone_id=previous.zone_id,
            config=config,
            created_by=created_by or previous.created_by,
        )
