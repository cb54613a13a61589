"""
DOCX container boundary.

A DOCX is a ZIP archive; the templater only ever reads and writes the
``word/document.xml`` entry.  Every other entry is copied across with its
name, order, compression type and content unchanged.
"""
from __future__ import annotations

import io
import logging
import zipfile
from typing import Any, Dict

from docx import Document as DocxDocument
from docx.oxml.ns import qn

logger = logging.getLogger(__name__)

DOCUMENT_XML = "word/document.xml"
DOCX_CONTENT_TYPE = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)


class DocxStructureError(ValueError):
    """The file is not a usable DOCX (bad archive, missing document.xml)."""


class EmptyDocumentError(DocxStructureError):
    """document.xml holds no text to work with."""

    def __init__(self, message: str = "No text content found in document") -> None:
        super().__init__(message)


def _open_zip(docx_bytes: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(docx_bytes))
    except zipfile.BadZipFile as exc:
        raise DocxStructureError(f"Invalid DOCX: not a ZIP archive ({exc})") from exc


def read_document_xml(docx_bytes: bytes) -> str:
    """Return ``word/document.xml`` decoded as UTF-8."""
    with _open_zip(docx_bytes) as archive:
        try:
            raw = archive.read(DOCUMENT_XML)
        except KeyError as exc:
            raise DocxStructureError("Invalid DOCX: document.xml not found") from exc
    return raw.decode("utf-8")


def replace_document_xml(docx_bytes: bytes, xml: str) -> bytes:
    """
    Build a new archive identical to *docx_bytes* except for ``word/document.xml``.

    Raises:
        DocxStructureError: input is not a ZIP or has no document.xml.
    """
    out = io.BytesIO()
    replaced = False
    with _open_zip(docx_bytes) as source, zipfile.ZipFile(out, "w") as target:
        for info in source.infolist():
            if info.filename == DOCUMENT_XML:
                target.writestr(info, xml.encode("utf-8"))
                replaced = True
            else:
                target.writestr(info, source.read(info.filename))
    if not replaced:
        raise DocxStructureError("Invalid DOCX: document.xml not found")
    return out.getvalue()


def describe_docx(docx_bytes: bytes) -> Dict[str, Any]:
    """
    Open the file with python-docx and return lightweight metadata.

    Used to validate uploads before anything is stored.

    Raises:
        DocxStructureError: python-docx cannot open the package.
    """
    try:
        doc = DocxDocument(io.BytesIO(docx_bytes))
    except Exception as exc:
        raise DocxStructureError(f"Cannot open DOCX file: {exc}") from exc

    body = doc.element.body
    paragraph_count = len(body.findall(f".//{qn('w:p')}"))
    text_parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            text_parts.extend(cell.text for cell in row.cells if cell.text.strip())
    word_count = len(" ".join(text_parts).split())

    core = doc.core_properties
    return {
        "title": core.title or "",
        "author": core.author or "",
        "subject": core.subject or "",
        "created": str(core.created) if core.created else "",
        "modified": str(core.modified) if core.modified else "",
        "paragraph_count": paragraph_count,
        "table_count": len(doc.tables),
        "word_count": word_count,
        "file_type": "docx",
    }
