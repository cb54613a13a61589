"""
Background run-delta templating endpoints.

Route summary
-------------
POST /{id}/pipeline/start    queue the batch pipeline for a document; returns immediately.
GET  /{id}/pipeline/status   live job status, or the persisted one when no job is in memory.
POST /{id}/pipeline/cancel   mark the job failed; its late completion is ignored.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies.auth import get_authorized_document
from app.models.database_models import Document, ProcessingStatus
from app.models.schemas import PipelineStartResponse, PipelineStatusResponse
from app.services.job_manager import JobStatus, job_manager, run_pipeline_job
from app.services.llm_client import OpenRouterClient, get_llm_client
from app.services.storage import LocalStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter()


def _status_response(job: JobStatus, result=None) -> PipelineStatusResponse:
    return PipelineStatusResponse(
        document_id=job.document_id,
        phase=job.phase.value,
        is_running=job_manager.is_running(job.document_id),
        batches_total=job.batches_total,
        batches_done=job.batches_done,
        changes_found=job.changes_found,
        errors=job.errors,
        cancelled=job.cancelled,
        elapsed_seconds=job.elapsed_seconds,
        result=result,
    )


@router.post(
    "/{document_id}/pipeline/start",
    response_model=PipelineStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def pipeline_start(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
    storage: LocalStorage = Depends(get_storage),
    llm: OpenRouterClient = Depends(get_llm_client),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> PipelineStartResponse:
    """
    Launch the batch pipeline as a background task for this document.

    Returns immediately. Poll ``GET .../pipeline/status`` for progress.
    """
    if not llm.configured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OPENROUTER_API_KEY not configured",
        )
    if job_manager.is_running(document.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Pipeline already running for document {document.id}.",
        )

    document.processing_status = ProcessingStatus.QUEUED
    document.processing_result = None
    # The job opens its own session, so the queued state must be visible first
    await db.commit()

    # Pre-create the status so it can be passed into the coroutine AND to start()
    js = JobStatus(document_id=document.id)
    job_manager.start(
        document.id,
        run_pipeline_job(document.id, js, llm, storage=storage, session_factory=session_factory),
        status=js,
    )

    logger.info("Document %d: templating job queued", document.id)

    return PipelineStartResponse(
        document_id=document.id,
        status=js.phase.value,
        message="Processing started. Poll the status endpoint for progress.",
    )


@router.get("/{document_id}/pipeline/status", response_model=PipelineStatusResponse)
async def pipeline_status(
    document: Document = Depends(get_authorized_document),
) -> PipelineStatusResponse:
    """Poll the current job status for this document."""
    job = job_manager.get_status(document.id)
    if job is not None:
        return _status_response(job, document.processing_result)

    persisted = document.processing_status
    return PipelineStatusResponse(
        document_id=document.id,
        phase="idle" if persisted == ProcessingStatus.PENDING else persisted.value,
        result=document.processing_result,
    )


@router.post("/{document_id}/pipeline/cancel", response_model=PipelineStatusResponse)
async def pipeline_cancel(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
) -> PipelineStatusResponse:
    """Cancel the running job: it is marked failed and its result discarded."""
    if not job_manager.is_running(document.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"No running pipeline for document {document.id}.",
        )

    job = job_manager.cancel(document.id)
    document.processing_status = ProcessingStatus.FAILED
    document.processing_result = {"success": False, "error": "Cancelled by user"}
    await db.commit()

    logger.info("Document %d: templating job cancelled", document.id)
    return _status_response(job, document.processing_result)
