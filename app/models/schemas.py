"""
Pydantic schemas for request/response validation.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# Enums (matching database enums)
class DocumentStatusSchema(str, Enum):
    """Document lifecycle for API responses."""

    UPLOADED = "uploaded"
    VERIFIED = "verified"
    TEMPLATED = "templated"


class MatchTypeSchema(str, Enum):
    """How an OCR field was matched to a template tag."""

    EXACT = "exact"
    SIMILAR = "similar"
    AI_MATCHED = "ai_matched"


# Document Schemas
class DocumentUploadResponse(BaseModel):
    """Schema for document upload response."""

    id: int
    name: str
    file_type: str
    status: DocumentStatusSchema
    storage_path: str
    metadata_json: Optional[Dict[str, Any]] = None
    message: str


class DocumentResponse(BaseModel):
    """Schema for document responses."""

    id: int
    name: str
    file_type: str
    status: DocumentStatusSchema
    storage_path: str
    processing_status: str
    template_id: Optional[int] = None
    metadata_json: Optional[Dict[str, Any]] = None
    field_count: int = 0
    created_at: datetime
    updated_at: datetime


class DocumentFieldResponse(BaseModel):
    """Schema for a detected variable of a document."""

    id: int
    field_name: str
    field_value: Optional[str] = None
    field_tag: str
    position: Optional[int] = None
    run_formatting: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


# Run inspection
class RunResponse(BaseModel):
    """Schema for one extracted run."""

    id: str
    text: str
    formatting: Dict[str, Any] = Field(default_factory=dict)
    paragraph_index: int
    run_index: int


class ParagraphResponse(BaseModel):
    """Schema for one extracted paragraph and its runs."""

    paragraph_id: str
    debug_path: str
    index: int
    full_text_context: str
    runs: List[RunResponse]


class DocumentRunsResponse(BaseModel):
    """Schema for run extraction results."""

    document_id: int
    paragraph_count: int
    run_count: int
    paragraphs: List[ParagraphResponse]


# Template building (label-grouped path)
class TemplateVariableResponse(BaseModel):
    """Schema for a variable found while building a template."""

    name: str
    tag: str
    original_value: str
    source: str
    index: int
    run_formatting: Dict[str, Any] = Field(default_factory=dict)


class ProcessTemplateResponse(BaseModel):
    """Schema for POST /documents/{id}/template."""

    success: bool = True
    document_id: int
    variables: List[TemplateVariableResponse]
    variable_count: int
    text_based_count: int
    visual_count: int
    total_text_nodes: int
    group_count: int
    template_filename: str
    storage_path: str
    base64: str
    ai_response: str = ""


# Background pipeline
class PipelineStartResponse(BaseModel):
    """Returned immediately when a templating job is queued."""

    success: bool = True
    document_id: int
    status: str
    message: str


class PipelineStatusResponse(BaseModel):
    """Live (or persisted) state of a templating job."""

    document_id: int
    phase: str
    is_running: bool = False
    batches_total: int = 0
    batches_done: int = 0
    changes_found: int = 0
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: Optional[float] = None
    result: Optional[Dict[str, Any]] = None


# Template Schemas
class TemplateCreateRequest(BaseModel):
    """Schema for creating a template from a processed document."""

    document_id: int
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class TemplateResponse(BaseModel):
    """Schema for template responses."""

    id: int
    name: str
    original_document_id: Optional[int] = None
    storage_path: str
    tag_count: int
    tags: List[str]
    tag_metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class TagMappingResponse(BaseModel):
    """One tag → run mapping of a template."""

    tag: str
    run_id: str
    original_text: str
    full_run_text: str
    is_clear: bool


class TemplateTagsResponse(BaseModel):
    """Schema for GET /templates/{id}/tags."""

    template_id: int
    tags: List[str]
    mappings: List[TagMappingResponse]


# Fill Schemas
class OcrFieldInput(BaseModel):
    """One field extracted by OCR."""

    tag: str = Field(..., min_length=1)
    value: str
    label: str = ""
    category: str = ""
    confidence: str = "medium"


class FillRequest(BaseModel):
    """Schema for POST /templates/{id}/fill."""

    ocr_fields: List[OcrFieldInput]


class MatchedFieldResponse(BaseModel):
    """Schema for one matched OCR field."""

    template_tag: str
    ocr_tag: str
    ocr_value: str
    ocr_label: str
    confidence: str
    match_type: MatchTypeSchema


class FillStatsResponse(BaseModel):
    """Schema for fill statistics."""

    total_template_tags: int
    matched_fields: int
    unmatched_tags: int
    replacements_made: int
    ai_matching_used: bool
    run_id_mappings_found: int


class FillResponse(BaseModel):
    """Schema for fill results."""

    success: bool = True
    base64: str
    filename: str
    storage_path: str
    template_name: str
    stats: FillStatsResponse
    matched_fields: List[MatchedFieldResponse]
    unmatched_tags: List[str]


# Health Check Schema
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    database: str
    storage: str
    llm: str
    taxonomy_version: str
    timestamp: datetime
