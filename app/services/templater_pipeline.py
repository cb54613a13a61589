"""
Run-delta batch pipeline for whole documents.

Paragraphs (with their runs) are packed into size-bounded batches and sent
to the model, which answers with only the runs that need to change:

    {"changes": [{"id": "<run id>", "new": "{{tag}}"}, {"id": "...", "new": ""}]}

Batches go out in windows of ``CONCURRENT_REQUESTS``.  A failed batch
contributes no changes instead of aborting the document.

Public API
----------
prepare_batches(paragraphs)             -> List[Batch]
process_batches(batches, client)        -> List[RunChange]
process_document(docx_bytes, client)    -> PipelineResult
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from app.config import settings
from app.services.docx_container import (
    DocxStructureError,
    EmptyDocumentError,
    read_document_xml,
    replace_document_xml,
)
from app.services.llm_client import OpenRouterClient
from app.services.run_extractor import Paragraph, RunChange, apply_run_changes, extract_paragraphs
from app.services.variable_tagger import WELL_FORMED_TAG_RE

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an expert in analysing DOCX documents.
You receive JSON with a list of paragraphs and their runs.
Your task is to identify VARIABLES (e.g. date, VIN, surname, address, amount) \
and prepare a list of replacements with {{tag}} placeholders.

RULES:
1. Analyse the content for variables.
2. Do not change constant texts (labels, headers, fixed wording).
3. If a variable is split across several runs:
   - First run: "{{tag}}"
   - Following runs: "" (empty string)

RESPONSE FORMAT (JSON):
{
  "changes": [
    { "id": "RUN_ID", "new": "{{tag}}" },
    { "id": "RUN_ID_2", "new": "" }
  ]
}
Return ONLY the runs that need to change. Skip unchanged ones.\
"""


@dataclasses.dataclass
class Batch:
    index: int
    paragraph_ids: List[str]
    user_message: str
    system_message: str = SYSTEM_PROMPT


@dataclasses.dataclass
class PipelineResult:
    success: bool
    error: Optional[str] = None
    docx_bytes: Optional[bytes] = None
    xml: Optional[str] = None
    stats: Dict[str, int] = dataclasses.field(default_factory=dict)
    replacements: List[Dict[str, str]] = dataclasses.field(default_factory=list)


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

def _paragraph_payload(paragraph: Paragraph) -> Dict[str, Any]:
    return {
        "paragraph_id": paragraph.paragraph_id,
        "debug_path": paragraph.debug_path,
        "full_text_context": paragraph.full_text_context,
        "runs": [{"id": run.id, "text": run.text} for run in paragraph.runs],
    }


def _compact(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def prepare_batches(
    paragraphs: Sequence[Paragraph],
    size_target: Optional[int] = None,
) -> List[Batch]:
    """
    Pack paragraphs into batches of roughly *size_target* characters.

    A paragraph costs its text length plus its JSON length.  A new batch is
    started when the next paragraph would overflow a non-empty one, so an
    oversized paragraph still gets a batch of its own.
    """
    target = size_target or settings.BATCH_SIZE_TARGET
    batches: List[Batch] = []
    current: List[Dict[str, Any]] = []
    current_size = 0

    def push() -> None:
        nonlocal current, current_size
        if not current:
            return
        batches.append(
            Batch(
                index=len(batches),
                paragraph_ids=[p["paragraph_id"] for p in current],
                user_message=_compact(current),
            )
        )
        current, current_size = [], 0

    for paragraph in paragraphs:
        payload = _paragraph_payload(paragraph)
        size = len(paragraph.full_text_context) + len(_compact(payload))
        if current_size + size > target and current:
            push()
        current.append(payload)
        current_size += size

    push()
    return batches


# ---------------------------------------------------------------------------
# LLM calls
# ---------------------------------------------------------------------------

def parse_changes(parsed: Any) -> List[RunChange]:
    """
    Keep only entries with a string ``id`` and a string ``new``.

    ``new`` must either be empty (the run is cleared) or carry at least one
    well-formed ``{{tag}}``; anything else is rewritten prose and is dropped.
    """
    if not isinstance(parsed, dict) or not isinstance(parsed.get("changes"), list):
        return []
    changes: List[RunChange] = []
    for item in parsed["changes"]:
        if not (
            isinstance(item, dict)
            and isinstance(item.get("id"), str)
            and isinstance(item.get("new"), str)
        ):
            continue
        new_text = item["new"]
        if new_text and not WELL_FORMED_TAG_RE.search(new_text):
            logger.warning("Dropping change for %s without a valid tag: %r", item["id"], new_text[:80])
            continue
        changes.append(RunChange(id=item["id"], new_text=new_text))
    return changes


async def _process_single_batch(batch: Batch, client: OpenRouterClient) -> List[RunChange]:
    ok, parsed = await client.complete_json(
        [
            {"role": "system", "content": batch.system_message},
            {"role": "user", "content": batch.user_message},
        ],
        model=settings.PIPELINE_MODEL,
        response_format={"type": "json_object"},
    )
    if not ok:
        raise ValueError("empty or unparseable LLM response")
    return parse_changes(parsed)


async def process_batches(
    batches: Sequence[Batch],
    client: OpenRouterClient,
    window: Optional[int] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> List[RunChange]:
    """
    Send *batches* in concurrent windows and merge their changes.

    The first change seen for a run id wins.  *on_progress* receives
    ``(batches done, changes so far)`` after every window.
    """
    window = window or settings.CONCURRENT_REQUESTS
    all_changes: List[RunChange] = []

    async def guarded(batch: Batch) -> List[RunChange]:
        try:
            return await _process_single_batch(batch, client)
        except Exception as exc:
            logger.warning("Batch %d failed: %s", batch.index + 1, exc)
            return []

    total_windows = (len(batches) + window - 1) // window
    for start in range(0, len(batches), window):
        chunk = batches[start:start + window]
        logger.info("Processing batch window %d/%d", start // window + 1, total_windows)
        results = await asyncio.gather(*(guarded(batch) for batch in chunk))
        for changes in results:
            all_changes.extend(changes)
        if on_progress is not None:
            on_progress(start + len(chunk), len(all_changes))

    unique: Dict[str, RunChange] = {}
    for change in all_changes:
        unique.setdefault(change.id, change)
    return list(unique.values())


# ---------------------------------------------------------------------------
# Whole document
# ---------------------------------------------------------------------------

async def process_document(
    docx_bytes: bytes,
    client: OpenRouterClient,
    on_batches: Optional[Callable[[int], None]] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> PipelineResult:
    """
    Extract, batch, tag and rewrite one document.

    Never raises: structural problems come back as ``success=False``.
    """
    try:
        xml = read_document_xml(docx_bytes)
        paragraphs = extract_paragraphs(xml)
        if not paragraphs:
            raise EmptyDocumentError()

        batches = prepare_batches(paragraphs)
        run_count = sum(len(p.runs) for p in paragraphs)
        logger.info("%d paragraphs, %d runs, %d batches", len(paragraphs), run_count, len(batches))
        if on_batches is not None:
            on_batches(len(batches))

        changes = await process_batches(batches, client, on_progress=on_progress)
        logger.info("LLM processing complete, %d change(s) found", len(changes))

        runs_by_id = {run.id: run for p in paragraphs for run in p.runs}
        changes = [
            dataclasses.replace(change, original_text=runs_by_id[change.id].text)
            if change.id in runs_by_id
            else change
            for change in changes
        ]
        new_xml, applied = apply_run_changes(xml, changes)
        new_docx = replace_document_xml(docx_bytes, new_xml)

    except DocxStructureError as exc:
        logger.error("Pipeline failed: %s", exc)
        return PipelineResult(success=False, error=str(exc))
    except Exception as exc:
        logger.exception("Pipeline failed unexpectedly")
        return PipelineResult(success=False, error=str(exc))

    replacements = [
        {
            "id": change.id,
            "original_text": change.original_text,
            "new_text": change.new_text,
        }
        for change in changes
    ]
    return PipelineResult(
        success=True,
        docx_bytes=new_docx,
        xml=new_xml,
        stats={
            "paragraphs": len(paragraphs),
            "runs": run_count,
            "batches": len(batches),
            "changes_applied": applied,
        },
        replacements=replacements,
    )
