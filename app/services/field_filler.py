"""
Template filling from OCR-extracted fields.

Matching OCR fields to template tags happens in one of two passes:

* AI matching (``MATCHER_MODEL``, JSON-object response).  When it returns
  anything at all, its result is final.
* Otherwise the basic pass: case-insensitive exact tag match, then a fuzzy
  match on normalised tags (separators and diacritics removed, equality or
  containment in either direction).

Matched tags are written into the runs found by :mod:`tag_mapper` and
highlighted; unmatched tags stay in the document as literal ``{{tag}}``.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from app.config import settings
from app.services.docx_container import (
    DocxStructureError,
    read_document_xml,
    replace_document_xml,
)
from app.services.llm_client import OpenRouterClient
from app.services.run_extractor import RunChange, apply_run_changes
from app.services.tag_mapper import TagMapping, map_tags_to_run_ids, template_tags
from app.utils.helpers import normalize_tag

logger = logging.getLogger(__name__)

_MATCHER_SYSTEM_PROMPT = """\
You are an expert at matching fields extracted by OCR to the variables of document templates.
Analyse the template variables and the OCR fields, then match them by meaning.

Matching rules:
1. Match OCR fields to template variables by meaning, not just by name
2. E.g. "vin" from OCR may match "VIN", "VIN_Number", "numer_vin"
3. "importer_name" may match "Nadawca", "Nazwa_firmy", "Importer"
4. Take context into account: "data_faktury" is the issue date, not the payment deadline
5. If a variable has no good match, return null for it
6. Each OCR field may be used only once\
"""


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class OcrField:
    tag: str
    value: str
    label: str = ""
    category: str = ""
    confidence: str = "medium"


@dataclasses.dataclass(frozen=True)
class MatchedField:
    template_tag: str
    ocr_tag: str
    ocr_value: str
    ocr_label: str
    confidence: str
    match_type: str   # "exact" | "similar" | "ai_matched"

    def to_dict(self) -> Dict[str, str]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class FillStats:
    total_template_tags: int = 0
    matched_fields: int = 0
    unmatched_tags: int = 0
    replacements_made: int = 0
    ai_matching_used: bool = False
    run_id_mappings_found: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class FillResult:
    success: bool
    error: Optional[str] = None
    docx_bytes: Optional[bytes] = None
    matched_fields: List[MatchedField] = dataclasses.field(default_factory=list)
    unmatched_tags: List[str] = dataclasses.field(default_factory=list)
    stats: FillStats = dataclasses.field(default_factory=FillStats)
    mappings: List[TagMapping] = dataclasses.field(default_factory=list)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _fuzzy_equal(template_tag: str, ocr_tag: str) -> bool:
    a, b = normalize_tag(template_tag), normalize_tag(ocr_tag)
    if not a or not b:
        return False
    return a == b or b in a or a in b


def match_fields_basic(
    tags: Sequence[str],
    ocr_fields: Sequence[OcrField],
) -> Tuple[List[MatchedField], List[str]]:
    """Exact (case-insensitive) match first, then fuzzy; returns (matched, unmatched)."""
    matched: List[MatchedField] = []
    unmatched: List[str] = []

    for tag in tags:
        field = next((f for f in ocr_fields if f.tag.lower() == tag.lower()), None)
        match_type = "exact"
        if field is None:
            field = next((f for f in ocr_fields if _fuzzy_equal(tag, f.tag)), None)
            match_type = "similar"

        if field is None:
            unmatched.append(tag)
            continue
        matched.append(
            MatchedField(
                template_tag=tag,
                ocr_tag=field.tag,
                ocr_value=field.value,
                ocr_label=field.label,
                confidence=field.confidence,
                match_type=match_type,
            )
        )
    return matched, unmatched


def _matcher_user_prompt(
    tags: Sequence[str],
    tag_metadata: Mapping[str, str],
    ocr_fields: Sequence[OcrField],
) -> str:
    tag_lines = "\n".join(
        "- {{" + tag + "}}: " + (tag_metadata.get(tag) or tag) for tag in tags
    )
    field_lines = "\n".join(
        f'- tag: "{f.tag}", label: "{f.label}", value: "{f.value}", '
        f'category: "{f.category}", confidence: "{f.confidence}"'
        for f in ocr_fields
    )
    return (
        "Match the OCR fields to the template variables.\n\n"
        f"TEMPLATE VARIABLES:\n{tag_lines}\n\n"
        f"OCR FIELDS:\n{field_lines}\n\n"
        "Return JSON in this format:\n"
        "{\n"
        '  "matches": [\n'
        "    {\n"
        '      "templateTag": "template_variable_name",\n'
        '      "ocrTag": "ocr_tag_or_null",\n'
        '      "ocrValue": "ocr_value_or_null",\n'
        '      "reasoning": "short explanation"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Return an entry for EVERY template variable, even without a match "
        "(ocrTag and ocrValue = null then)."
    )


async def match_fields_with_ai(
    tags: Sequence[str],
    tag_metadata: Mapping[str, str],
    ocr_fields: Sequence[OcrField],
    client: Optional[OpenRouterClient],
) -> List[Dict[str, Any]]:
    """
    Ask the matcher model for a 1:1 assignment.

    Returns the raw ``matches`` list, or ``[]`` when no client/key is
    available or anything goes wrong.
    """
    if client is None or not client.configured:
        logger.info("AI matching unavailable, falling back to basic matching")
        return []
    if not tags or not ocr_fields:
        return []

    ok, parsed = await client.complete_json(
        [
            {"role": "system", "content": _MATCHER_SYSTEM_PROMPT},
            {"role": "user", "content": _matcher_user_prompt(tags, tag_metadata, ocr_fields)},
        ],
        model=settings.MATCHER_MODEL,
        response_format={"type": "json_object"},
    )
    if not ok or not isinstance(parsed, dict):
        return []
    matches = parsed.get("matches") or []
    if not isinstance(matches, list):
        return []
    return [m for m in matches if isinstance(m, dict) and m.get("templateTag")]


def _from_ai_matches(
    tags: Sequence[str],
    ai_matches: Sequence[Dict[str, Any]],
    ocr_fields: Sequence[OcrField],
) -> Tuple[List[MatchedField], List[str]]:
    by_tag = {f.tag: f for f in ocr_fields}
    matched: List[MatchedField] = []
    for match in ai_matches:
        template_tag = match["templateTag"]
        if template_tag not in tags or any(m.template_tag == template_tag for m in matched):
            continue
        ocr_tag, ocr_value = match.get("ocrTag"), match.get("ocrValue")
        if not ocr_tag or not ocr_value:
            continue
        field = by_tag.get(ocr_tag)
        matched.append(
            MatchedField(
                template_tag=template_tag,
                ocr_tag=str(ocr_tag),
                ocr_value=str(ocr_value),
                ocr_label=(field.label if field and field.label else str(ocr_tag)),
                confidence=(field.confidence if field and field.confidence else "medium"),
                match_type="ai_matched",
            )
        )
    done = {m.template_tag for m in matched}
    return matched, [tag for tag in tags if tag not in done]


# ---------------------------------------------------------------------------
# Run changes
# ---------------------------------------------------------------------------

def build_fill_changes(
    matched: Sequence[MatchedField],
    mappings: Sequence[TagMapping],
) -> List[RunChange]:
    """
    Turn matched fields into run changes.

    Every occurrence of a matched tag is filled.  Only the ``{{tag}}``
    substring is replaced, so literal text around it survives.  Once the
    first run of a split span is rewritten, its clear entries empty the
    rest of the span without highlight.
    """
    texts: Dict[str, str] = {}
    originals: Dict[str, str] = {}
    highlight: Dict[str, bool] = {}

    for field in matched:
        for mapping in mappings:
            if mapping.is_clear or mapping.tag != field.template_tag:
                continue
            current = texts.get(mapping.run_id, mapping.full_run_text)
            if current == mapping.original_text:
                new_text = field.ocr_value
            else:
                new_text = current.replace(mapping.original_text, field.ocr_value)
            texts[mapping.run_id] = new_text
            originals.setdefault(mapping.run_id, mapping.full_run_text)
            highlight[mapping.run_id] = True

    for mapping in mappings:
        if mapping.is_clear and mapping.span_run_id in texts:
            texts[mapping.run_id] = ""
            originals.setdefault(mapping.run_id, mapping.full_run_text)
            highlight[mapping.run_id] = False

    return [
        RunChange(
            id=run_id,
            new_text=text,
            highlight=highlight[run_id],
            original_text=originals[run_id],
        )
        for run_id, text in texts.items()
    ]


# ---------------------------------------------------------------------------
# Fill
# ---------------------------------------------------------------------------

async def fill_template(
    template_docx: bytes,
    ocr_fields: Sequence[OcrField],
    tag_metadata: Optional[Mapping[str, str]] = None,
    client: Optional[OpenRouterClient] = None,
) -> FillResult:
    """
    Fill *template_docx* with *ocr_fields*.

    The template's tags come from *tag_metadata* when it is non-empty,
    otherwise from the tags found in the document itself.  Never raises:
    structural problems come back as ``success=False``.
    """
    tag_metadata = dict(tag_metadata or {})
    try:
        xml = read_document_xml(template_docx)
        mappings = map_tags_to_run_ids(xml)
        tags = list(tag_metadata) if tag_metadata else template_tags(mappings)

        ai_matches = await match_fields_with_ai(tags, tag_metadata, ocr_fields, client)
        if ai_matches:
            matched, unmatched = _from_ai_matches(tags, ai_matches, ocr_fields)
        else:
            matched, unmatched = match_fields_basic(tags, ocr_fields)
        logger.info("Fill: %d matched, %d unmatched tag(s)", len(matched), len(unmatched))

        missing = [m.template_tag for m in matched if not any(
            mp.tag == m.template_tag for mp in mappings
        )]
        for tag in missing:
            logger.info("No run mapping found for tag %s", tag)

        changes = build_fill_changes(matched, mappings)
        if changes:
            new_xml, applied = apply_run_changes(xml, changes)
            docx_bytes = replace_document_xml(template_docx, new_xml)
        else:
            applied, docx_bytes = 0, template_docx

    except DocxStructureError as exc:
        logger.error("Fill failed: %s", exc)
        return FillResult(success=False, error=str(exc))
    except Exception as exc:
        logger.exception("Fill failed unexpectedly")
        return FillResult(success=False, error=str(exc))

    stats = FillStats(
        total_template_tags=len(tags),
        matched_fields=len(matched),
        unmatched_tags=len(unmatched),
        replacements_made=applied,
        ai_matching_used=bool(ai_matches),
        run_id_mappings_found=len(mappings),
    )
    return FillResult(
        success=True,
        docx_bytes=docx_bytes,
        matched_fields=matched,
        unmatched_tags=unmatched,
        stats=stats,
        mappings=mappings,
    )
