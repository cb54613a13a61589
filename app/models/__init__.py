"""Database and schema models for the templater."""
from app.models.database_models import (
    User,
    Document,
    DocumentField,
    Template,
    DocumentStatus,
    ProcessingStatus,
)
from app.models.schemas import (
    DocumentUploadResponse,
    DocumentResponse,
    DocumentFieldResponse,
    ProcessTemplateResponse,
    TemplateResponse,
    FillRequest,
    FillResponse,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "User",
    "Document",
    "DocumentField",
    "Template",
    "DocumentStatus",
    "ProcessingStatus",
    # Pydantic schemas
    "DocumentUploadResponse",
    "DocumentResponse",
    "DocumentFieldResponse",
    "ProcessTemplateResponse",
    "TemplateResponse",
    "FillRequest",
    "FillResponse",
    "HealthCheckResponse",
]
