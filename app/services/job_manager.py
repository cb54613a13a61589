"""
In-memory singleton that tracks background templating jobs per document.

Usage
-----
    from app.services.job_manager import job_manager, JobStatus

    status = JobStatus(document_id=doc_id)
    job_manager.start(doc_id, run_pipeline_job(doc_id, status, client), status)
    # ... later ...
    current = job_manager.get_status(doc_id)

Cancellation does not preempt the task: the job is marked failed and its
late completion is ignored, both in memory and in the database.

Finished statuses stay in memory for ``JOB_STATUS_TTL`` seconds so clients
can poll the outcome; after that the persisted document state is the record.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import re
import time
from typing import Any, Callable, Coroutine, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import AsyncSessionLocal
from app.models.database_models import Document, DocumentStatus, ProcessingStatus
from app.services.llm_client import OpenRouterClient
from app.services.storage import LocalStorage
from app.services.templater_pipeline import process_document
from app.utils.helpers import safe_filename

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Job phase enum
# ---------------------------------------------------------------------------

class JobPhase(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL = (JobPhase.COMPLETED, JobPhase.FAILED)


# ---------------------------------------------------------------------------
# Job status (mutable dataclass shared between task and poller)
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class JobStatus:
    document_id: int
    phase: JobPhase = JobPhase.QUEUED
    batches_total: int = 0
    batches_done: int = 0
    changes_found: int = 0
    errors: List[str] = dataclasses.field(default_factory=list)
    started_at: float = dataclasses.field(default_factory=time.monotonic)
    completed_at: Optional[float] = None
    cancelled: bool = False

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at if self.completed_at else time.monotonic()
        return round(end - self.started_at, 2)

    def finish(self, phase: JobPhase) -> None:
        """Move to a terminal phase unless already in one."""
        if self.phase in _TERMINAL:
            return
        self.phase = phase
        self.completed_at = time.monotonic()
        logger.info("Job for document %d -> %s", self.document_id, phase.value)


# ---------------------------------------------------------------------------
# Job manager (class-level state, acts as a singleton)
# ---------------------------------------------------------------------------

class JobManager:
    """Manages background asyncio.Tasks per document."""

    _tasks: Dict[int, asyncio.Task] = {}
    _status: Dict[int, JobStatus] = {}

    @classmethod
    def is_running(cls, document_id: int) -> bool:
        task = cls._tasks.get(document_id)
        return task is not None and not task.done()

    @classmethod
    def get_status(cls, document_id: int) -> Optional[JobStatus]:
        cls.prune()
        return cls._status.get(document_id)

    @classmethod
    def prune(cls, ttl: Optional[float] = None) -> int:
        """Drop statuses of jobs that finished more than *ttl* seconds ago."""
        ttl = settings.JOB_STATUS_TTL if ttl is None else ttl
        now = time.monotonic()
        expired = [
            document_id
            for document_id, status in cls._status.items()
            if status.completed_at is not None
            and now - status.completed_at > ttl
            and not cls.is_running(document_id)
        ]
        for document_id in expired:
            del cls._status[document_id]
        if expired:
            logger.debug("Evicted %d finished job status(es)", len(expired))
        return len(expired)

    @classmethod
    def start(
        cls,
        document_id: int,
        coro: Coroutine[Any, Any, Any],
        status: Optional[JobStatus] = None,
    ) -> JobStatus:
        """
        Launch a background task for *document_id*.

        *status* is normally pre-created by the caller so it can be passed
        into the coroutine; it is registered as-is and updated in real time.

        Raises:
            RuntimeError: a job is already running for the document.
        """
        if cls.is_running(document_id):
            coro.close()
            raise RuntimeError(f"Job already running for document {document_id}")

        cls.prune()
        if status is None:
            status = JobStatus(document_id=document_id)
        cls._status[document_id] = status

        async def _wrapper() -> None:
            try:
                await coro
            except Exception as exc:
                logger.error(
                    "Job failed for document %d: %s", document_id, exc, exc_info=True
                )
                status.errors.append(f"job crash: {str(exc)[:200]}")
                status.finish(JobPhase.FAILED)
            finally:
                status.finish(JobPhase.FAILED)

        task = asyncio.create_task(_wrapper())
        cls._tasks[document_id] = task
        task.add_done_callback(lambda _t: cls._cleanup(document_id, _t))

        logger.info("Job started for document %d", document_id)
        return status

    @classmethod
    async def wait(cls, document_id: int) -> Optional[JobStatus]:
        """Wait for the running task (if any) and return the final status."""
        task = cls._tasks.get(document_id)
        if task is not None:
            await asyncio.shield(task)
        return cls._status.get(document_id)

    @classmethod
    def cancel(cls, document_id: int) -> Optional[JobStatus]:
        """Mark the job failed and cancelled; the task itself keeps running."""
        status = cls._status.get(document_id)
        if status is None or status.phase in _TERMINAL:
            return status
        status.cancelled = True
        status.errors.append("cancelled by user")
        status.finish(JobPhase.FAILED)
        return status

    @classmethod
    def _cleanup(cls, document_id: int, task: asyncio.Task) -> None:
        """Remove the task reference (status is kept for polling)."""
        if cls._tasks.get(document_id) is task:
            cls._tasks.pop(document_id, None)


# Module-level singleton instance
job_manager = JobManager


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def processed_filename(document_name: str) -> str:
    base = re.sub(r"\.docx$", "", document_name, flags=re.IGNORECASE)
    return f"{safe_filename(base)}_processed.docx"


async def _persist_failure(
    session_factory: Callable[[], AsyncSession],
    document_id: int,
    message: str,
) -> None:
    async with session_factory() as db:
        document = await db.get(Document, document_id)
        if document is None:
            return
        document.processing_status = ProcessingStatus.FAILED
        document.processing_result = {"success": False, "error": message}
        await db.commit()


async def run_pipeline_job(
    document_id: int,
    status: JobStatus,
    client: OpenRouterClient,
    storage: Optional[LocalStorage] = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> None:
    """
    Run :func:`process_document` for one stored document and persist the outcome.

    Designed to be run as an ``asyncio.Task`` via ``JobManager``.  The
    *status* object is mutated in place so callers can poll progress.
    """
    storage = storage or LocalStorage()

    def on_batches(total: int) -> None:
        status.batches_total = total

    def on_progress(done: int, changes: int) -> None:
        status.batches_done = done
        status.changes_found = changes

    try:
        async with session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None:
                status.errors.append("document not found")
                status.finish(JobPhase.FAILED)
                return
            if status.cancelled:
                return
            document.processing_status = ProcessingStatus.PROCESSING
            await db.commit()
            storage_path, name = document.storage_path, document.name

        status.phase = JobPhase.PROCESSING
        logger.info("Job for document %d -> processing", document_id)

        docx_bytes = await storage.load(storage_path)
        result = await process_document(
            docx_bytes, client, on_batches=on_batches, on_progress=on_progress
        )

        if status.cancelled:
            logger.info("Ignoring late completion of cancelled job for document %d", document_id)
            return

        if not result.success:
            status.errors.append(result.error or "processing failed")
            await _persist_failure(session_factory, document_id, result.error or "processing failed")
            status.finish(JobPhase.FAILED)
            return

        filename = processed_filename(name)
        key = await storage.save(f"processed/{document_id}/{filename}", result.docx_bytes)

        async with session_factory() as db:
            document = await db.get(Document, document_id)
            if document is None or status.cancelled:
                return
            document.xml_content = result.xml
            document.processing_result = {
                "success": True,
                "storagePath": key,
                "templateFilename": filename,
                "stats": result.stats,
                "replacements": result.replacements,
            }
            document.processing_status = ProcessingStatus.COMPLETED
            document.status = DocumentStatus.TEMPLATED
            await db.commit()

        status.changes_found = len(result.replacements)
        status.finish(JobPhase.COMPLETED)
        logger.info(
            "Job for document %d completed: %d change(s) applied in %.1fs",
            document_id,
            result.stats.get("changes_applied", 0),
            status.elapsed_seconds,
        )

    except Exception as exc:
        logger.error("Job for document %d failed: %s", document_id, exc, exc_info=True)
        status.errors.append(str(exc)[:200])
        if not status.cancelled:
            await _persist_failure(session_factory, document_id, str(exc))
        status.finish(JobPhase.FAILED)
