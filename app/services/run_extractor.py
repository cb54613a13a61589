"""
Paragraph / run extraction and run-level rewriting for document.xml.

The body is walked in document order.  Body paragraphs get the debug path
``P{n}`` and body tables ``T{n}``; table cells recurse as
``T{t}:R{r}:C{c}:P{p}`` with nested tables as ``...:C{c}:T{n}``.  Content
controls (``w:sdt``) and ``w:customXml`` wrappers are looked through, so their
paragraphs, rows and cells are numbered as if the wrapper were absent.

A paragraph owns every run below it that has no closer ``w:p`` ancestor:
runs inside hyperlinks, insertions, smart tags and inline content controls
count, runs of textbox paragraphs do not.  A run id is
``{w14:paraId or debug path}-{run ordinal}``, so ids are reproducible from the
XML alone.

Parsing goes through python-docx's oxml layer so run properties can be
edited with its schema-aware helpers (``w:highlight`` lands in the right
position inside ``w:rPr``).
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from docx.enum.text import WD_COLOR_INDEX
from docx.oxml import parse_xml
from docx.oxml.ns import qn
from docx.text.run import Run as DocxRun
from lxml import etree

from app.services.docx_container import DocxStructureError, EmptyDocumentError

logger = logging.getLogger(__name__)

_BODY = qn("w:body")
_P = qn("w:p")
_R = qn("w:r")
_T = qn("w:t")
_TAB = qn("w:tab")
_TBL = qn("w:tbl")
_TR = qn("w:tr")
_TC = qn("w:tc")
_RPR = qn("w:rPr")
_SDT = qn("w:sdt")
_SDT_CONTENT = qn("w:sdtContent")
_CUSTOM_XML = qn("w:customXml")
_VAL = qn("w:val")
W14_PARA_ID = "{http://schemas.microsoft.com/office/word/2010/wordml}paraId"

_OFF_VALUES = frozenset({"0", "false", "off", "none"})


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class RunFormatting:
    """Formatting decoded from a run's ``w:rPr``."""

    bold: bool = False
    italic: bool = False
    underline: bool = False
    font_size: Optional[str] = None    # "12pt"; w:sz is in half-points
    font_family: Optional[str] = None  # w:rFonts/@w:ascii
    color: Optional[str] = None        # "#RRGGBB"; "auto" is ignored

    def to_dict(self) -> Dict[str, object]:
        """Only the properties that are actually set."""
        return {
            key: value
            for key, value in dataclasses.asdict(self).items()
            if value not in (None, False)
        }

    def describe(self) -> str:
        """Compact form used as inline model context, e.g. ``bold,size:12pt``."""
        parts: List[str] = []
        if self.bold:
            parts.append("bold")
        if self.italic:
            parts.append("italic")
        if self.underline:
            parts.append("underline")
        if self.font_size:
            parts.append(f"size:{self.font_size}")
        return ",".join(parts)


@dataclasses.dataclass
class Run:
    id: str
    text: str
    texts: List[str]              # content of each w:t child, in order
    text_positions: List[int]     # document-order ordinal of each of those w:t
    formatting: RunFormatting
    paragraph_index: int
    run_index: int
    raw_markup: str


@dataclasses.dataclass
class Paragraph:
    paragraph_id: str
    debug_path: str
    index: int
    full_text_context: str
    runs: List[Run]

    @property
    def is_table_paragraph(self) -> bool:
        return self.debug_path.startswith("T")


@dataclasses.dataclass(frozen=True)
class RunChange:
    """Replacement text for one run, addressed by run id."""

    id: str
    new_text: str
    highlight: bool = False
    original_text: str = ""  # full run text at extraction time; "" = unknown


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------

Visitor = Callable[[etree._Element, str], None]


def _parse(xml: str) -> etree._Element:
    try:
        return parse_xml(xml.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise DocxStructureError(f"Malformed document.xml: {exc}") from exc


def _children(container: etree._Element, *tags: str) -> Iterator[etree._Element]:
    """Children of *container* with one of *tags*, looking through sdt/customXml wrappers."""
    for child in container.iterchildren():
        if child.tag == _SDT:
            content = child.find(_SDT_CONTENT)
            if content is not None:
                yield from _children(content, *tags)
        elif child.tag == _CUSTOM_XML:
            yield from _children(child, *tags)
        elif child.tag in tags:
            yield child


def _runs_of(p: etree._Element) -> List[etree._Element]:
    """Runs whose nearest enclosing paragraph is *p*, in document order."""
    return [r for r in p.iter(_R) if next(r.iterancestors(_P), None) is p]


def _walk_body(body: etree._Element, visit: Visitor) -> None:
    p_idx = t_idx = 0
    for child in _children(body, _P, _TBL):
        if child.tag == _P:
            visit(child, f"P{p_idx}")
            p_idx += 1
        elif child.tag == _TBL:
            _walk_table(child, f"T{t_idx}", visit)
            t_idx += 1


def _walk_table(tbl: etree._Element, prefix: str, visit: Visitor) -> None:
    for row_idx, row in enumerate(_children(tbl, _TR)):
        for cell_idx, cell in enumerate(_children(row, _TC)):
            p_idx = t_idx = 0
            for child in _children(cell, _P, _TBL):
                if child.tag == _P:
                    visit(child, f"{prefix}:R{row_idx}:C{cell_idx}:P{p_idx}")
                    p_idx += 1
                elif child.tag == _TBL:
                    _walk_table(child, f"{prefix}:R{row_idx}:C{cell_idx}:T{t_idx}", visit)
                    t_idx += 1


def _stable_id(p: etree._Element, debug_path: str) -> str:
    return p.get(W14_PARA_ID) or debug_path


def _is_on(element: Optional[etree._Element]) -> bool:
    if element is None:
        return False
    return (element.get(_VAL) or "").lower() not in _OFF_VALUES


def extract_formatting(r: etree._Element) -> RunFormatting:
    """Decode bold/italic/underline, size, font and colour from ``w:rPr``."""
    rpr = r.find(_RPR)
    if rpr is None:
        return RunFormatting()

    font_size = None
    sz = rpr.find(qn("w:sz"))
    if sz is not None and (sz.get(_VAL) or "").isdigit():
        font_size = f"{int(sz.get(_VAL)) / 2:g}pt"

    fonts = rpr.find(qn("w:rFonts"))
    font_family = fonts.get(qn("w:ascii")) if fonts is not None else None

    color = None
    color_el = rpr.find(qn("w:color"))
    if color_el is not None:
        value = color_el.get(_VAL)
        if value and value.lower() != "auto":
            color = f"#{value}"

    return RunFormatting(
        bold=_is_on(rpr.find(qn("w:b"))),
        italic=_is_on(rpr.find(qn("w:i"))),
        underline=_is_on(rpr.find(qn("w:u"))),
        font_size=font_size,
        font_family=font_family,
        color=color,
    )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_paragraphs(xml: str) -> List[Paragraph]:
    """
    Return every paragraph that holds at least one run with text.

    Runs without text are skipped but still count towards the run ordinal,
    so ids stay stable when empty runs sit between text runs.  Each run also
    records the document-order position of its ``w:t`` nodes, the same
    ordinal :func:`~app.services.xml_text_nodes.extract_text_nodes` reports.
    """
    root = _parse(xml)
    body = root.find(_BODY)
    if body is None:
        return []

    positions = {t: i for i, t in enumerate(root.iter(_T))}

    paragraphs: List[Paragraph] = []

    def handle(p: etree._Element, debug_path: str) -> None:
        stable_id = _stable_id(p, debug_path)
        paragraph = Paragraph(
            paragraph_id=stable_id,
            debug_path=debug_path,
            index=len(paragraphs),
            full_text_context="",
            runs=[],
        )
        for run_index, r in enumerate(_runs_of(p)):
            text_elements = list(r.iterchildren(_T))
            texts = [t.text or "" for t in text_elements]
            text = "".join(texts)
            if not text:
                continue
            if r.find(_TAB) is not None:
                paragraph.full_text_context += " "
            paragraph.full_text_context += text
            paragraph.runs.append(
                Run(
                    id=f"{stable_id}-{run_index}",
                    text=text,
                    texts=texts,
                    text_positions=[positions[t] for t in text_elements],
                    formatting=extract_formatting(r),
                    paragraph_index=paragraph.index,
                    run_index=run_index,
                    raw_markup=etree.tostring(r, encoding="unicode"),
                )
            )
        if paragraph.runs:
            paragraphs.append(paragraph)

    _walk_body(body, handle)
    return paragraphs


def extract_runs(xml: str) -> List[Run]:
    """
    Flatten :func:`extract_paragraphs` into runs, in document order.

    Raises:
        EmptyDocumentError: no run in the body carries text.
    """
    runs = [run for paragraph in extract_paragraphs(xml) for run in paragraph.runs]
    if not runs:
        raise EmptyDocumentError()
    return runs


# ---------------------------------------------------------------------------
# Run-level rewriting
# ---------------------------------------------------------------------------

def _apply_change(r: etree._Element, change: RunChange) -> bool:
    text_elements = list(r.iterchildren(_T))
    # Only touch text nodes that belong to the run text recorded at extraction
    targets = [
        t for t in text_elements
        if not change.original_text or (t.text or "") in change.original_text
    ]
    if text_elements and not targets:
        logger.warning(
            "Run %s changed since extraction, skipping (expected %r)",
            change.id,
            change.original_text[:80],
        )
        return False

    if change.highlight and change.new_text:
        DocxRun(r, None).font.highlight_color = WD_COLOR_INDEX.YELLOW

    if not targets:
        if change.new_text:
            r.add_t(change.new_text)
        return True

    first, rest = targets[0], targets[1:]
    first.text = change.new_text
    if change.new_text:
        first.set(qn("xml:space"), "preserve")
    for t in rest:
        r.remove(t)
    return True


def apply_run_changes(xml: str, changes: Iterable[RunChange]) -> Tuple[str, int]:
    """
    Apply *changes* to the runs they address and return ``(new_xml, applied)``.

    Changes for unknown run ids are ignored.  When several changes share an
    id the last one wins.

    Raises:
        DocxStructureError: the XML has no ``w:body``.
    """
    root = _parse(xml)
    body = root.find(_BODY)
    if body is None:
        raise DocxStructureError("Document body missing")

    by_id: Dict[str, RunChange] = {change.id: change for change in changes}
    applied = 0

    def handle(p: etree._Element, debug_path: str) -> None:
        nonlocal applied
        stable_id = _stable_id(p, debug_path)
        for run_index, r in enumerate(_runs_of(p)):
            change = by_id.get(f"{stable_id}-{run_index}")
            if change is not None and _apply_change(r, change):
                applied += 1

    if by_id:
        _walk_body(body, handle)

    new_xml = etree.tostring(
        root, xml_declaration=True, encoding="UTF-8", standalone=True
    ).decode("utf-8")
    return new_xml, applied
