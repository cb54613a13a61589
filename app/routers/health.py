"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone
import logging

from app.config import settings
from app.database import get_db, ping
from app.models.schemas import HealthCheckResponse
from app.services.llm_client import OpenRouterClient, get_llm_client
from app.services.storage import LocalStorage, get_storage
from app.services.taxonomy import load_taxonomy

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    llm: OpenRouterClient = Depends(get_llm_client),
    storage: LocalStorage = Depends(get_storage),
):
    """
    Report whether the service can template documents right now.

    ``healthy`` needs a reachable database, a usable storage root and an
    LLM key; anything less is ``degraded``.
    """
    db_status = "ok" if await ping(db) else "error"
    storage_status = "ok" if await storage.check() else "error"

    # The LLM is only required for tagging and AI matching
    llm_status = "configured" if llm.configured else "not_configured"

    overall_status = (
        "healthy"
        if db_status == "ok" and storage_status == "ok" and llm.configured
        else "degraded"
    )
    if overall_status != "healthy":
        logger.warning(
            "Health degraded: database=%s storage=%s llm=%s", db_status, storage_status, llm_status
        )

    return HealthCheckResponse(
        status=overall_status,
        database=db_status,
        storage=storage_status,
        llm=llm_status,
        taxonomy_version=load_taxonomy(settings.TAXONOMY_PATH).version,
        timestamp=datetime.now(timezone.utc),
    )
