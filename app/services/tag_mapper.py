"""
Fill-time mapping of ``{{tag}}`` placeholders to the runs that hold them.

A tag normally sits inside one run.  When an editor split it (``{{vin`` +
``Number}}``) the runs from the one holding ``{{`` up to the one closing the
last open tag form a span.  The span's whole text belongs to its first run:
every tag in it is mapped there, and every later run of the span gets a
synthetic ``__CLEAR_<tag>_<n>`` entry.  Those runs are emptied whenever the
first run is rewritten, because its replacement already carries their text.
"""
from __future__ import annotations

import dataclasses
import logging
import re
from typing import Dict, List, Optional, Tuple

from app.services.run_extractor import Paragraph, Run, extract_paragraphs

logger = logging.getLogger(__name__)

TAG_IN_TEXT_RE = re.compile(r"\{\{([^}]+)\}\}")
CLEAR_PREFIX = "__CLEAR_"


@dataclasses.dataclass(frozen=True)
class TagMapping:
    tag: str                    # bare tag name, or "__CLEAR_<tag>_<n>"
    run_id: str
    original_text: str          # "{{tag}}" (the run's own text for clear entries)
    full_run_text: str          # run text; the whole span's text for split tags
    cleared_tag: Optional[str] = None
    span_run_id: Optional[str] = None  # clear entries: first run of their span

    @property
    def is_clear(self) -> bool:
        return self.cleared_tag is not None

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "run_id": self.run_id,
            "original_text": self.original_text,
            "full_run_text": self.full_run_text,
            "is_clear": self.is_clear,
        }


def _has_open_tag(text: str) -> bool:
    return text.rfind("{{") > text.rfind("}}")


def _split_spans(runs: List[Run]) -> Dict[int, Tuple[int, str]]:
    """``{first run position: (last run position, concatenated text)}`` per split span."""
    spans: Dict[int, Tuple[int, str]] = {}
    start, concatenated = -1, ""
    for i, run in enumerate(runs):
        if start < 0:
            if "{{" in run.text and "}}" not in run.text:
                start, concatenated = i, run.text
            continue

        concatenated += run.text
        if _has_open_tag(concatenated):
            continue
        if TAG_IN_TEXT_RE.search(concatenated):
            spans[start] = (i, concatenated)
        start, concatenated = -1, ""

    # A span still open at the paragraph end keeps whatever tags it closed
    if start >= 0 and TAG_IN_TEXT_RE.search(concatenated):
        spans[start] = (len(runs) - 1, concatenated)
    return spans


def _map_tags(run: Run, text: str, mappings: List[TagMapping]) -> List[str]:
    found: List[str] = []
    for match in TAG_IN_TEXT_RE.finditer(text):
        tag = match.group(1)
        if tag in found:
            continue
        found.append(tag)
        mappings.append(
            TagMapping(
                tag=tag,
                run_id=run.id,
                original_text=match.group(0),
                full_run_text=text,
            )
        )
    return found


def _map_paragraph(paragraph: Paragraph, mappings: List[TagMapping]) -> None:
    runs = paragraph.runs
    spans = _split_spans(runs)

    i = 0
    while i < len(runs):
        head = runs[i]
        if i not in spans:
            _map_tags(head, head.text, mappings)
            i += 1
            continue

        end, concatenated = spans[i]
        split_tag = _map_tags(head, concatenated, mappings)[0]
        for j in range(i + 1, end + 1):
            mappings.append(
                TagMapping(
                    tag=f"{CLEAR_PREFIX}{split_tag}_{j}",
                    run_id=runs[j].id,
                    original_text=runs[j].text,
                    full_run_text=runs[j].text,
                    cleared_tag=split_tag,
                    span_run_id=head.id,
                )
            )
        i = end + 1


def map_tags_to_run_ids(xml: str) -> List[TagMapping]:
    """Return every tag mapping and clear entry in *xml*, in document order."""
    mappings: List[TagMapping] = []
    for paragraph in extract_paragraphs(xml):
        if TAG_IN_TEXT_RE.search(paragraph.full_text_context) is None:
            continue
        _map_paragraph(paragraph, mappings)
    logger.info("Found %d tag mapping(s) in template", len(mappings))
    return mappings


def template_tags(mappings: List[TagMapping]) -> List[str]:
    """Distinct tag names (no clear entries), in first-seen order."""
    seen: List[str] = []
    for mapping in mappings:
        if not mapping.is_clear and mapping.tag not in seen:
            seen.append(mapping.tag)
    return seen
