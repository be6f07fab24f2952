"""Worker callback that runs the opinion map pipeline for one session.

Endpoints:
    run_worker(request, session, pipeline): Authenticate the callback and drive the session to completion.
    worker_health(): Liveness probe for the callback URL.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.core.config import get_settings
from opinion_map.core.exceptions import PipelineFailedError, SessionNotFoundError
from opinion_map.core.security import verify_worker_request
from opinion_map.db.session import get_session
from opinion_map.models import SessionStatus
from opinion_map.schemas import WorkerRequest, WorkerResponse
from opinion_map.services.pipeline import OpinionMapPipeline

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["worker"])


def get_pipeline() -> OpinionMapPipeline:
    return OpinionMapPipeline()


@router.post("/opinion-map-worker", response_model=WorkerResponse)
async def run_worker(
    request: Request,
    session: AsyncSession = Depends(get_session),
    pipeline: OpinionMapPipeline = Depends(get_pipeline),
):
    body = await request.body()
    authorised = verify_worker_request(
        signature=request.headers.get("Upstash-Signature"),
        authorization=request.headers.get("Authorization"),
        body=body,
        settings=get_settings(),
    )
    if not authorised:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        payload = WorkerRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc
    if not payload.session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session_id")

    _LOGGER.info("Worker received session %s", payload.session_id)
    try:
        result = await pipeline.run(session, payload.session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PipelineFailedError as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Pipeline failed", "message": str(exc), "session_id": exc.session_id},
        )
    if result.status == SessionStatus.FAILED:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Pipeline failed",
                "message": result.error_message or "Session failed",
                "session_id": result.session_id,
            },
        )

    return WorkerResponse(
        success=result.success,
        session_id=result.session_id,
        status=result.status,
        cancelled=result.cancelled,
        total_posts=result.total_posts,
        total_clusters=result.total_clusters,
        outlier_count=result.outlier_count,
    )


@router.get("/opinion-map-worker")
async def worker_health():
    return {
        "status": "ok",
        "service": "opinion-map-worker",
        "timestamp": datetime.utcnow().isoformat(timespec="seconds") + "Z",
    }
