"""
Document upload, inspection and template processing endpoints.

POST   /upload               store a DOCX and record its metadata.
GET    /                     list the caller's documents.
GET    /{id}                 document metadata.
DELETE /{id}                 delete document, fields and stored files.
GET    /{id}/fields          detected variables.
GET    /{id}/runs            extracted paragraphs and runs.
POST   /{id}/template        tag variables (label-grouped path) and store the template.
"""
from __future__ import annotations

import base64
import logging
import re
import uuid
from pathlib import Path
from typing import Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies.auth import get_authorized_document, get_current_user_id, get_or_create_user
from app.models.database_models import Document, DocumentField, DocumentStatus, User
from app.models.schemas import (
    DocumentFieldResponse,
    DocumentResponse,
    DocumentRunsResponse,
    DocumentUploadResponse,
    ParagraphResponse,
    ProcessTemplateResponse,
    RunResponse,
    TemplateVariableResponse,
)
from app.services.docx_container import DocxStructureError, describe_docx, read_document_xml
from app.services.llm_client import OpenRouterClient, get_llm_client
from app.services.run_extractor import extract_paragraphs
from app.services.storage import LocalStorage, get_storage
from app.services.taxonomy import load_taxonomy
from app.services.template_builder import build_template
from app.services.variable_tagger import VariableTagger
from app.utils.helpers import generate_hash, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(document: Document, field_count: int = 0) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        name=document.name,
        file_type=document.file_type,
        status=document.status.value,
        storage_path=document.storage_path,
        processing_status=document.processing_status.value,
        template_id=document.template_id,
        metadata_json=document.metadata_json,
        field_count=field_count,
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


async def _load_stored(storage: LocalStorage, key: str) -> bytes:
    try:
        return await storage.load(key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stored file {key!r} not found.",
        )


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_document(
    file: UploadFile = File(...),
    user: User = Depends(get_or_create_user),
    db: AsyncSession = Depends(get_db),
    storage: LocalStorage = Depends(get_storage),
) -> DocumentUploadResponse:
    """
    Upload a DOCX and record it for the current user.

    - Max file size: 50 MB (configurable via MAX_FILE_SIZE)
    - File is stored under a UUID key to avoid collisions
    - The file must open with python-docx, otherwise 422
    """
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upload must include a filename.",
        )

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in settings.SUPPORTED_FILE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Unsupported file type '{file_ext}'. "
                f"Accepted: {', '.join(settings.SUPPORTED_FILE_TYPES)}"
            ),
        )

    # Read in slices while enforcing the size limit
    data = bytearray()
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > settings.MAX_FILE_SIZE:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=(
                    f"File exceeds the {settings.MAX_FILE_SIZE // (1024 * 1024)} MB "
                    "size limit."
                ),
            )
    payload = bytes(data)

    try:
        metadata = describe_docx(payload)
    except DocxStructureError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )
    metadata["sha256"] = generate_hash(payload)
    metadata["original_filename"] = file.filename
    metadata["size_bytes"] = len(payload)

    key = await storage.save(f"originals/{user.id}/{uuid.uuid4().hex}{file_ext}", payload)

    document = Document(
        user_id=user.id,
        name=file.filename,
        file_type=file_ext.lstrip("."),
        storage_path=key,
        metadata_json=metadata,
        status=DocumentStatus.UPLOADED,
    )
    db.add(document)
    await db.commit()

    logger.info("Document %r stored as id=%d (%s bytes)", file.filename, document.id, f"{len(payload):,}")

    return DocumentUploadResponse(
        id=document.id,
        name=document.name,
        file_type=document.file_type,
        status=document.status.value,
        storage_path=key,
        metadata_json=metadata,
        message=(
            f"Document uploaded successfully. "
            f"{metadata['paragraph_count']} paragraphs, {metadata['table_count']} tables."
        ),
    )


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[DocumentResponse])
async def list_documents(
    skip: int = 0,
    limit: int = 100,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[DocumentResponse]:
    """
    List the caller's documents, newest first.

    Supports pagination via `skip` and `limit` query parameters.
    """
    docs_result = await db.execute(
        select(Document)
        .where(Document.user_id == user_id)
        .order_by(Document.created_at.desc(), Document.id.desc())
        .offset(skip)
        .limit(limit)
    )
    documents = docs_result.scalars().all()

    # Fetch field counts for all documents in a single GROUP BY query
    doc_ids = [d.id for d in documents]
    counts: Dict[int, int] = {}
    if doc_ids:
        counts_result = await db.execute(
            select(DocumentField.document_id, func.count(DocumentField.id).label("cnt"))
            .where(DocumentField.document_id.in_(doc_ids))
            .group_by(DocumentField.document_id)
        )
        counts = {row.document_id: row.cnt for row in counts_result}

    return [_to_response(doc, counts.get(doc.id, 0)) for doc in documents]


# ---------------------------------------------------------------------------
# Get by ID
# ---------------------------------------------------------------------------

@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
) -> DocumentResponse:
    """Return metadata and field count for a single document."""
    count_result = await db.execute(
        select(func.count(DocumentField.id)).where(DocumentField.document_id == document.id)
    )
    return _to_response(document, count_result.scalar_one() or 0)


@router.get("/{document_id}/fields", response_model=List[DocumentFieldResponse])
async def get_document_fields(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
) -> List[DocumentFieldResponse]:
    """Variables detected in the document, in document order."""
    fields_result = await db.execute(
        select(DocumentField)
        .where(DocumentField.document_id == document.id)
        .order_by(DocumentField.position, DocumentField.id)
    )
    return [DocumentFieldResponse.model_validate(f) for f in fields_result.scalars().all()]


@router.get("/{document_id}/runs", response_model=DocumentRunsResponse)
async def get_document_runs(
    document: Document = Depends(get_authorized_document),
    storage: LocalStorage = Depends(get_storage),
) -> DocumentRunsResponse:
    """Paragraphs and runs of the original upload, with formatting and debug paths."""
    docx_bytes = await _load_stored(storage, document.storage_path)
    try:
        paragraphs = extract_paragraphs(read_document_xml(docx_bytes))
    except DocxStructureError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )

    return DocumentRunsResponse(
        document_id=document.id,
        paragraph_count=len(paragraphs),
        run_count=sum(len(p.runs) for p in paragraphs),
        paragraphs=[
            ParagraphResponse(
                paragraph_id=p.paragraph_id,
                debug_path=p.debug_path,
                index=p.index,
                full_text_context=p.full_text_context,
                runs=[
                    RunResponse(
                        id=r.id,
                        text=r.text,
                        formatting=r.formatting.to_dict(),
                        paragraph_index=r.paragraph_index,
                        run_index=r.run_index,
                    )
                    for r in p.runs
                ],
            )
            for p in paragraphs
        ],
    )


# ---------------------------------------------------------------------------
# Template processing (label-grouped path)
# ---------------------------------------------------------------------------

@router.post("/{document_id}/template", response_model=ProcessTemplateResponse)
async def process_document_template(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
    storage: LocalStorage = Depends(get_storage),
    llm: OpenRouterClient = Depends(get_llm_client),
) -> ProcessTemplateResponse:
    """
    Replace the variable parts of the document with ``{{tags}}``.

    Stores the tagged DOCX, replaces the document's fields with the detected
    variables and returns the template as base64.
    """
    if not llm.configured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OPENROUTER_API_KEY not configured",
        )

    docx_bytes = await _load_stored(storage, document.storage_path)
    tagger = VariableTagger(llm, load_taxonomy())
    result = await build_template(docx_bytes, tagger)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=result.error,
        )

    base = re.sub(r"\.docx$", "", document.name, flags=re.IGNORECASE)
    filename = f"{base}_szablon.docx"
    key = await storage.save(
        f"templates/{document.id}/{safe_filename(base)}_szablon.docx", result.docx_bytes
    )

    await db.execute(delete(DocumentField).where(DocumentField.document_id == document.id))
    for variable in result.variables:
        if variable.source != "text":
            continue
        db.add(
            DocumentField(
                document_id=document.id,
                field_name=variable.name,
                field_value=variable.original_value,
                field_tag=variable.tag,
                position=variable.index,
                run_formatting=variable.run_formatting or None,
            )
        )

    document.xml_content = result.xml
    document.status = DocumentStatus.VERIFIED
    document.processing_result = {
        "success": True,
        "storagePath": key,
        "templateFilename": filename,
        "stats": {
            "total_text_nodes": result.total_text_nodes,
            "groups": result.group_count,
            "variables": len(result.variables),
        },
    }
    await db.commit()

    logger.info(
        "Document %d templated: %d variable(s) from %d text nodes",
        document.id,
        len(result.variables),
        result.total_text_nodes,
    )

    return ProcessTemplateResponse(
        document_id=document.id,
        variables=[TemplateVariableResponse(**v.to_dict()) for v in result.variables],
        variable_count=len(result.variables),
        text_based_count=result.text_based_count,
        visual_count=result.visual_count,
        total_text_nodes=result.total_text_nodes,
        group_count=result.group_count,
        template_filename=filename,
        storage_path=key,
        base64=base64.b64encode(result.docx_bytes).decode("ascii"),
        ai_response=result.ai_response,
    )


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_document(
    document: Document = Depends(get_authorized_document),
    db: AsyncSession = Depends(get_db),
    storage: LocalStorage = Depends(get_storage),
) -> None:
    """
    Delete a document, its fields, and its stored files.

    Field deletion is handled by the CASCADE constraint on the documents
    foreign key.
    """
    keys = [document.storage_path]
    result_path = (document.processing_result or {}).get("storagePath")
    # A template created from this document still points at the result file
    if result_path and document.template_id is None:
        keys.append(result_path)
    for key in keys:
        await storage.delete(key)

    await db.execute(delete(DocumentField).where(DocumentField.document_id == document.id))
    await db.delete(document)
    await db.commit()

    logger.info("Deleted document id=%d (%r)", document.id, document.name)
