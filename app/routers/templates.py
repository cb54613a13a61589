"""
Template management and filling endpoints.

POST   /                 save a processed document as a reusable template.
GET    /                 list the caller's templates.
GET    /{id}             template metadata.
DELETE /{id}             delete a template.
GET    /{id}/tags        tags in the template and the runs that hold them.
POST   /{id}/fill        fill the template with OCR fields.
"""
from __future__ import annotations

import base64
import logging
import re
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies.auth import get_authorized_template, get_current_user_id, get_or_create_user
from app.models.database_models import Document, DocumentField, DocumentStatus, Template, User
from app.models.schemas import (
    FillRequest,
    FillResponse,
    FillStatsResponse,
    MatchedFieldResponse,
    TagMappingResponse,
    TemplateCreateRequest,
    TemplateResponse,
    TemplateTagsResponse,
)
from app.services.docx_container import DocxStructureError, read_document_xml
from app.services.field_filler import OcrField, fill_template
from app.services.llm_client import OpenRouterClient, get_llm_client
from app.services.storage import LocalStorage, get_storage
from app.services.tag_mapper import TAG_IN_TEXT_RE, map_tags_to_run_ids, template_tags
from app.utils.helpers import safe_filename, storage_timestamp

logger = logging.getLogger(__name__)

router = APIRouter()

_BRACES_RE = re.compile(r"^\{\{|\}\}$")


def _to_response(template: Template) -> TemplateResponse:
    tag_metadata = template.tag_metadata or {}
    return TemplateResponse(
        id=template.id,
        name=template.name,
        original_document_id=template.original_document_id,
        storage_path=template.storage_path,
        tag_count=len(tag_metadata),
        tags=list(tag_metadata),
        tag_metadata=tag_metadata,
        created_at=template.created_at,
    )


async def _load_template_file(storage: LocalStorage, template: Template) -> bytes:
    try:
        return await storage.load(template.storage_path)
    except (FileNotFoundError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template file for template {template.id} not found.",
        )


def tag_metadata_from_replacements(replacements: List[dict]) -> Dict[str, str]:
    """
    Map each tag introduced by a replacement to the text it replaced.

    The first replacement that introduces a tag wins.
    """
    metadata: Dict[str, str] = {}
    for replacement in replacements:
        original = replacement.get("original_text", "")
        for match in TAG_IN_TEXT_RE.finditer(replacement.get("new_text", "")):
            metadata.setdefault(match.group(1), original)
    return metadata


def tag_metadata_from_fields(fields: List[DocumentField]) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for field in fields:
        tag = _BRACES_RE.sub("", field.field_tag or "")
        if tag:
            metadata.setdefault(tag, field.field_value or "")
    return metadata


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

@router.post("/", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateCreateRequest,
    user: User = Depends(get_or_create_user),
    db: AsyncSession = Depends(get_db),
) -> TemplateResponse:
    """
    Save a processed document as a template.

    Example values per tag come from the pipeline's replacements when the
    document went through the batch pipeline, otherwise from its detected
    fields.
    """
    doc_result = await db.execute(
        select(Document).where(
            Document.id == payload.document_id,
            Document.user_id == user.id,
        )
    )
    document = doc_result.scalar_one_or_none()
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Document {payload.document_id} not found.",
        )

    processing_result = document.processing_result or {}
    storage_path = processing_result.get("storagePath")
    if not storage_path:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Document {document.id} has not been processed into a template yet.",
        )

    replacements = processing_result.get("replacements") or []
    if replacements:
        tag_metadata = tag_metadata_from_replacements(replacements)
    else:
        fields_result = await db.execute(
            select(DocumentField)
            .where(DocumentField.document_id == document.id)
            .order_by(DocumentField.position, DocumentField.id)
        )
        tag_metadata = tag_metadata_from_fields(fields_result.scalars().all())

    template = Template(
        user_id=user.id,
        name=payload.name or f"{document.name} - Template",
        original_document_id=document.id,
        storage_path=storage_path,
        tag_metadata=tag_metadata,
    )
    db.add(template)
    await db.flush()

    document.template_id = template.id
    document.status = DocumentStatus.VERIFIED
    await db.commit()
    await db.refresh(template)

    logger.info(
        "Template %d created from document %d with %d tag(s)",
        template.id,
        document.id,
        len(tag_metadata),
    )
    return _to_response(template)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[TemplateResponse])
async def list_templates(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[TemplateResponse]:
    """List the caller's templates, newest first."""
    result = await db.execute(
        select(Template)
        .where(Template.user_id == user_id)
        .order_by(Template.created_at.desc(), Template.id.desc())
    )
    return [_to_response(t) for t in result.scalars().all()]


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template: Template = Depends(get_authorized_template),
) -> TemplateResponse:
    return _to_response(template)


@router.get("/{template_id}/tags", response_model=TemplateTagsResponse)
async def get_template_tags(
    template: Template = Depends(get_authorized_template),
    storage: LocalStorage = Depends(get_storage),
) -> TemplateTagsResponse:
    """Tags found in the stored template and the run each one lives in."""
    docx_bytes = await _load_template_file(storage, template)
    try:
        mappings = map_tags_to_run_ids(read_document_xml(docx_bytes))
    except DocxStructureError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )

    return TemplateTagsResponse(
        template_id=template.id,
        tags=template_tags(mappings),
        mappings=[TagMappingResponse(**m.to_dict()) for m in mappings],
    )


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_template(
    template: Template = Depends(get_authorized_template),
    db: AsyncSession = Depends(get_db),
    storage: LocalStorage = Depends(get_storage),
) -> None:
    """
    Delete a template.

    The stored file is shared with the source document's processing result;
    it is only removed when that document no longer points at it.
    """
    document = None
    if template.original_document_id is not None:
        document = await db.get(Document, template.original_document_id)

    file_in_use = (
        document is not None
        and (document.processing_result or {}).get("storagePath") == template.storage_path
    )
    if document is not None and document.template_id == template.id:
        document.template_id = None
    if not file_in_use:
        await storage.delete(template.storage_path)

    await db.delete(template)
    await db.commit()
    logger.info("Template %d deleted", template.id)


# ---------------------------------------------------------------------------
# Fill
# ---------------------------------------------------------------------------

@router.post("/{template_id}/fill", response_model=FillResponse)
async def fill_template_endpoint(
    payload: FillRequest,
    template: Template = Depends(get_authorized_template),
    user_id: str = Depends(get_current_user_id),
    storage: LocalStorage = Depends(get_storage),
    llm: OpenRouterClient = Depends(get_llm_client),
) -> FillResponse:
    """
    Fill the template with OCR-extracted fields.

    Tags are matched with the LLM when it is available, otherwise by exact
    and then fuzzy tag names.  Filled values are highlighted; tags without a
    value stay in the document as ``{{tag}}``.
    """
    template_docx = await _load_template_file(storage, template)
    ocr_fields = [
        OcrField(
            tag=f.tag,
            value=f.value,
            label=f.label,
            category=f.category,
            confidence=f.confidence,
        )
        for f in payload.ocr_fields
    ]

    result = await fill_template(
        template_docx,
        ocr_fields,
        tag_metadata=template.tag_metadata or {},
        client=llm,
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=result.error,
        )

    timestamp = storage_timestamp()
    safe_name = safe_filename(template.name)
    filename = f"wypelniony_{safe_name}_{timestamp}.docx"
    key = await storage.save(f"filled/{user_id}/{timestamp}_{safe_name}.docx", result.docx_bytes)

    logger.info(
        "Template %d filled: %d/%d tag(s) matched, %d replacement(s)",
        template.id,
        result.stats.matched_fields,
        result.stats.total_template_tags,
        result.stats.replacements_made,
    )

    return FillResponse(
        base64=base64.b64encode(result.docx_bytes).decode("ascii"),
        filename=filename,
        storage_path=key,
        template_name=template.name,
        stats=FillStatsResponse(**result.stats.to_dict()),
        matched_fields=[MatchedFieldResponse(**m.to_dict()) for m in result.matched_fields],
        unmatched_tags=result.unmatched_tags,
    )
