"""Hand-off of sessions to the worker entry point.

Classes:
    QStashDispatcher: Publishes the worker callback through the QStash HTTP API.
    BackgroundDispatcher: Runs the pipeline in-process after the response is sent.

Functions:
    run_pipeline_job(session_id): Run one session with its own database session.
    get_dispatcher(): Dispatcher selected by ``DISPATCH_MODE``.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from fastapi import BackgroundTasks

from opinion_map.core.config import Settings, get_settings
from opinion_map.core.exceptions import OpinionMapError, PipelineFailedError
from opinion_map.db.session import SessionLocal
from opinion_map.services.pipeline import OpinionMapPipeline

_LOGGER = logging.getLogger(__name__)

WORKER_PATH = "/webhooks/opinion-map-worker"


class Dispatcher(Protocol):
    async def dispatch(self, session_id: str, background_tasks: Optional[BackgroundTasks] = None) -> str:
        ...


async def run_pipeline_job(session_id: str) -> None:
    async with SessionLocal() as session:
        try:
            await OpinionMapPipeline().run(session, session_id)
        except PipelineFailedError as exc:
            _LOGGER.warning("Background pipeline for %s failed: %s", session_id, exc)
        except OpinionMapError:
            _LOGGER.exception("Background pipeline for %s could not start", session_id)


class BackgroundDispatcher:
    async def dispatch(self, session_id: str, background_tasks: Optional[BackgroundTasks] = None) -> str:
        if background_tasks is None:
            raise RuntimeError("BackgroundDispatcher requires FastAPI BackgroundTasks")
        background_tasks.add_task(run_pipeline_job, session_id)
        _LOGGER.info("Scheduled in-process pipeline for %s", session_id)
        return f"local:{session_id}"


class QStashDispatcher:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def destination(self) -> str:
        return self._settings.app_url.rstrip("/") + WORKER_PATH

    async def dispatch(self, session_id: str, background_tasks: Optional[BackgroundTasks] = None) -> str:
        token = self._settings.qstash_token
        if token is None:
            raise RuntimeError("QStash dispatch requires QSTASH_TOKEN")

        url = f"{self._settings.qstash_url.rstrip('/')}/v2/publish/{self.destination}"
        headers = {
            "Authorization": f"Bearer {token.get_secret_value()}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self._settings.qstash_retries),
        }
        payload = {"session_id": session_id}

        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()

        message_id = str(response.json().get("messageId", ""))
        _LOGGER.info("Published session %s to QStash (message %s)", session_id, message_id or "?")
        return message_id


def get_dispatcher() -> Dispatcher:
    settings = get_settings()
    if settings.dispatch_mode == "qstash":
        return QStashDispatcher(settings)
    return BackgroundDispatcher()
