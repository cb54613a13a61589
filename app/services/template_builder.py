"""
Label-grouped template building.

    docx bytes -> document.xml -> text nodes + paragraphs -> merged groups
               -> tagger -> {node index -> text} -> rewritten xml -> docx bytes

The rewrite only touches the content of the affected ``<w:t>`` nodes, so the
output differs from the input exactly where variables were found.

Secondary verification is an extension point.  ``build_template`` accepts an
optional async ``verifier`` (see :data:`Verifier`) that inspects the document
after the tagger pass and proposes extra ``(text, tag)`` pairs, e.g. from a
vision model looking at the rendered page.  No route passes one today, so
``source="visual"`` variables and ``visual_count`` only appear when a caller
supplies a verifier.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from app.services.docx_container import (
    DocxStructureError,
    EmptyDocumentError,
    read_document_xml,
    replace_document_xml,
)
from app.services.label_grouper import group_paragraphs, map_group_results
from app.services.run_extractor import extract_paragraphs
from app.services.variable_tagger import WELL_FORMED_TAG_RE, VariableTagger, find_variables
from app.services.xml_text_nodes import TextNode, extract_text_nodes, replace_text_in_xml

logger = logging.getLogger(__name__)

# async (xml, variables found so far) -> extra (text, tag) pairs
Verifier = Callable[[str, List["TemplateVariable"]], Awaitable[Iterable[Tuple[str, str]]]]


@dataclasses.dataclass
class TemplateVariable:
    name: str
    tag: str
    original_value: str
    source: str                      # "text" | "visual"
    index: int                       # text node index that received the tag
    run_formatting: Dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class TemplateBuildResult:
    success: bool
    error: Optional[str] = None
    docx_bytes: Optional[bytes] = None
    xml: Optional[str] = None
    variables: List[TemplateVariable] = dataclasses.field(default_factory=list)
    total_text_nodes: int = 0
    group_count: int = 0
    ai_response: str = ""

    @property
    def text_based_count(self) -> int:
        return sum(1 for v in self.variables if v.source == "text")

    @property
    def visual_count(self) -> int:
        return sum(1 for v in self.variables if v.source == "visual")


async def _run_verifier(
    verifier: Verifier,
    xml: str,
    text_nodes: Sequence[TextNode],
    replacements: Dict[int, str],
    variables: List[TemplateVariable],
) -> List[TemplateVariable]:
    try:
        pairs = list(await verifier(xml, list(variables)))
    except Exception as exc:
        logger.warning("Secondary verification failed, continuing without it: %s", exc)
        return []

    extra: List[TemplateVariable] = []
    for text, tag in pairs:
        if not WELL_FORMED_TAG_RE.fullmatch(tag or ""):
            logger.warning("Verifier returned malformed tag %r, ignored", tag)
            continue
        node = next(
            (n for n in text_nodes if n.text == text and n.index not in replacements),
            None,
        )
        if node is None:
            continue
        replacements[node.index] = tag
        extra.append(
            TemplateVariable(
                name=tag[2:-2],
                tag=tag,
                original_value=text,
                source="visual",
                index=node.index,
            )
        )
    if extra:
        logger.info("Secondary verification added %d variable(s)", len(extra))
    return extra


async def build_template(
    docx_bytes: bytes,
    tagger: VariableTagger,
    verifier: Optional[Verifier] = None,
) -> TemplateBuildResult:
    """
    Tag the variable parts of *docx_bytes* and return the rewritten document.

    Never raises: structural problems come back as ``success=False``.
    """
    try:
        xml = read_document_xml(docx_bytes)
        text_nodes = extract_text_nodes(xml)
        if not text_nodes:
            raise EmptyDocumentError()

        paragraphs = extract_paragraphs(xml)
        groups = group_paragraphs(paragraphs, text_nodes)
        logger.info(
            "Template build: %d text nodes, %d paragraphs, %d groups",
            len(text_nodes),
            len(paragraphs),
            len(groups),
        )

        merged_texts = [group.merged_text for group in groups]
        tagging = await tagger.tag(merged_texts, labels=[g.preceding_label for g in groups])

        replacements = map_group_results(text_nodes, groups, tagging.outputs)
        valid = {node.index for node in text_nodes}

        variables: List[TemplateVariable] = []
        for found in find_variables(merged_texts, tagging.outputs):
            group = groups[found.source_index]
            first = next(
                (m for m in group.members if m.text_node_index in valid),
                group.members[0],
            )
            variables.append(
                TemplateVariable(
                    name=found.variable_name,
                    tag=found.tag,
                    original_value=found.original_text,
                    source="text",
                    index=first.text_node_index,
                    run_formatting=first.run.formatting.to_dict(),
                )
            )

        if verifier is not None:
            variables += await _run_verifier(verifier, xml, text_nodes, replacements, variables)

        new_xml = replace_text_in_xml(xml, replacements, text_nodes)
        new_docx = replace_document_xml(docx_bytes, new_xml)

    except DocxStructureError as exc:
        logger.error("Template build failed: %s", exc)
        return TemplateBuildResult(success=False, error=str(exc))
    except Exception as exc:
        logger.exception("Template build failed unexpectedly")
        return TemplateBuildResult(success=False, error=str(exc))

    logger.info(
        "Template build: %d variable(s), %d replacement(s)", len(variables), len(replacements)
    )
    return TemplateBuildResult(
        success=True,
        docx_bytes=new_docx,
        xml=new_xml,
        variables=variables,
        total_text_nodes=len(text_nodes),
        group_count=len(groups),
        ai_response=tagging.raw_response,
    )
