"""
Main FastAPI application for the DOCX templater backend.
Handles CORS, request logging middleware, lifespan events, error shapes and router registration.
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import close_db, init_db
from app.routers import documents, health, pipeline, templates
from app.services.taxonomy import load_taxonomy

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Startup / shutdown helpers
# ---------------------------------------------------------------------------

async def _check_database() -> bool:
    """Initialise DB tables and verify the connection.  Returns True on success."""
    try:
        await init_db()
        logger.info("✓ Database connection OK")
        return True
    except Exception as exc:
        logger.error("✗ Database connection failed: %s", exc)
        raise


def _check_taxonomy() -> None:
    """Load the tagging taxonomy once so a broken file fails at startup."""
    taxonomy = load_taxonomy(settings.TAXONOMY_PATH)
    logger.info(
        "✓ Taxonomy %s (%s): %d constant group(s), %d variable categor(ies)",
        taxonomy.version,
        taxonomy.domain,
        len(taxonomy.constants),
        len(taxonomy.variables),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown event handler."""
    logger.info("=" * 60)
    logger.info("  Starting templater backend …")
    logger.info("=" * 60)

    # 1. Database (required; raises on failure)
    await _check_database()

    # 2. Taxonomy (required; raises on failure)
    _check_taxonomy()

    # 3. LLM key (optional; template processing returns 500 without it)
    if settings.OPENROUTER_API_KEY:
        logger.info("✓ OpenRouter key configured")
    else:
        logger.warning(
            "⚠ OPENROUTER_API_KEY is not set.  Template processing is unavailable; "
            "filling falls back to name matching."
        )

    # 4. Storage directory
    os.makedirs(settings.STORAGE_DIR, exist_ok=True)
    logger.info("✓ Storage directory: %s", os.path.abspath(settings.STORAGE_DIR))

    logger.info("=" * 60)
    logger.info("  Templater backend ready on http://%s:%d", settings.HOST, settings.PORT)
    logger.info("  Swagger UI : http://%s:%d/docs", settings.HOST, settings.PORT)
    logger.info("  Health     : http://%s:%d/api/health", settings.HOST, settings.PORT)
    logger.info("=" * 60)

    yield  # ← server is running

    logger.info("Shutting down templater backend …")
    await close_db()
    logger.info("✓ Shutdown complete.")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DOCX Templater API",
    description=(
        "Turns filled-in DOCX forms into reusable `{{tag}}` templates and fills "
        "them again from OCR-extracted fields.\n\n"
        "Key endpoints:\n"
        "- `POST /api/documents/upload`: upload a DOCX\n"
        "- `POST /api/documents/{id}/template`: tag variables in one call\n"
        "- `POST /api/documents/{id}/pipeline/start`: batch run-level templating\n"
        "- `POST /api/templates`: save a processed document as a template\n"
        "- `POST /api/templates/{id}/fill`: fill a template from OCR fields\n"
    ),
    version="0.3.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / response logging middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every request with method, path, status code, and elapsed time.
    Attaches an ``X-Process-Time`` header (milliseconds) to every response.
    """
    t0 = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - t0) * 1000, 2)

    # Skip noisy status polling from the frontend
    path = request.url.path
    if path not in ("/api/health", "/") and not path.endswith("/pipeline/status"):
        logger.info(
            "%s %s → %d  (%.2f ms)",
            request.method,
            path,
            response.status_code,
            elapsed_ms,
        )

    response.headers["X-Process-Time"] = f"{elapsed_ms}ms"
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

def _error_body(message, **extra) -> dict:
    return {"success": False, "error": message, "detail": message, **extra}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Every handled error carries ``success: false`` and a message."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in errors
    ) or "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(message),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a structured JSON error for any unhandled exception."""
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            str(exc) or "Internal server error",
            path=str(request.url.path),
            timestamp=datetime.now(timezone.utc).isoformat(),
        ),
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(health.router,     prefix="/api/health",    tags=["Health"])
app.include_router(documents.router,  prefix="/api/documents", tags=["Documents"])
app.include_router(pipeline.router,   prefix="/api/documents", tags=["Pipeline"])
app.include_router(templates.router,  prefix="/api/templates", tags=["Templates"])


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@app.get("/", tags=["Root"], include_in_schema=False)
async def root():
    """API root; returns basic service info."""
    return {
        "name": "DOCX Templater API",
        "version": "0.3.0",
        "description": "DOCX template extraction and filling backend",
        "docs": "/docs",
        "health": "/api/health",
        "endpoints": {
            "documents": "/api/documents",
            "pipeline": "/api/documents/{id}/pipeline",
            "templates": "/api/templates",
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=True,
        log_level="info",
    )
