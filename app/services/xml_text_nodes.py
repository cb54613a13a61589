"""
Byte-exact access to the ``<w:t>`` text nodes of a WordprocessingML body.

Only the narrow ``<w:t ...>text</w:t>`` grammar is tokenised here.  Every
character outside a targeted node's content span is copied through untouched,
so rewriting with an empty replacement map returns the input unchanged.

Public API
----------
extract_text_nodes(xml)                        -> List[TextNode]
replace_text_in_xml(xml, replacements, nodes)  -> str
decode_xml_entities(text) / encode_xml_entities(text)
"""
from __future__ import annotations

import dataclasses
import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Opening tag (with or without attributes), raw content, closing tag; or a
# self-closing <w:t/>, which has no content but still takes an ordinal.
# <w:tab/>, <w:tbl>, <w:tc> etc. never match because of the (?:\s...)? guard.
TEXT_NODE_RE = re.compile(r"<w:t(?:\s[^>]*?)?(?:/>|>(?P<content>[^<]*)</w:t>)")

_DECODE = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&amp;", "&"),  # last, so "&amp;lt;" decodes to "&lt;"
)
_ENCODE = (
    ("&", "&amp;"),  # first, so inserted entities are not double-escaped
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&apos;"),
)


@dataclasses.dataclass(frozen=True)
class TextNode:
    """One ``<w:t>`` element, in document order."""

    index: int                   # ordinal among all <w:t> matches
    text: str                    # decoded content
    byte_range: Tuple[int, int]  # (start, end) of the raw content inside the source string

    @property
    def start(self) -> int:
        return self.byte_range[0]

    @property
    def end(self) -> int:
        return self.byte_range[1]


def decode_xml_entities(text: str) -> str:
    """Turn the five predefined XML entities back into characters."""
    for entity, char in _DECODE:
        text = text.replace(entity, char)
    return text


def encode_xml_entities(text: str) -> str:
    """Escape ``& < > " '`` for use as element content."""
    for char, entity in _ENCODE:
        text = text.replace(char, entity)
    return text


def extract_text_nodes(xml: str, include_empty: bool = False) -> List[TextNode]:
    """
    Return every ``<w:t>`` node of *xml* with its decoded text and content span.

    ``index`` is the node's position among all ``w:t`` elements of the
    document, the same order lxml's ``iter()`` walks.  Empty nodes keep their
    ordinal but are left out of the result unless *include_empty* is set;
    self-closing ``<w:t/>`` nodes are never returned since they have no
    content span to rewrite.
    """
    nodes: List[TextNode] = []
    for index, match in enumerate(TEXT_NODE_RE.finditer(xml)):
        raw = match.group("content")
        if raw is None:
            continue
        text = decode_xml_entities(raw)
        if text or include_empty:
            nodes.append(TextNode(index=index, text=text, byte_range=match.span("content")))
    return nodes


def replace_text_in_xml(
    xml: str,
    replacements: Mapping[int, str],
    nodes: Optional[List[TextNode]] = None,
) -> str:
    """
    Replace the content of selected text nodes, leaving all other bytes intact.

    Args:
        xml:          Source document.xml.
        replacements: ``{node index -> new plain text}``.  Text is escaped here.
        nodes:        Nodes previously extracted from this same *xml*.  When
                      given, each node's recorded text must still match the
                      source, otherwise ``ValueError`` is raised.

    Edits are applied from the highest offset down so earlier spans stay valid.
    """
    if not replacements:
        return xml

    spans: Dict[int, Tuple[int, int]] = {}
    if nodes is not None:
        for node in nodes:
            if node.index in replacements:
                raw = xml[node.start:node.end]
                if decode_xml_entities(raw) != node.text:
                    raise ValueError(
                        f"Text node {node.index} no longer matches the source XML"
                    )
                spans[node.index] = node.byte_range
    else:
        for index, match in enumerate(TEXT_NODE_RE.finditer(xml)):
            if index in replacements and match.group("content") is not None:
                spans[index] = match.span("content")

    missing = set(replacements) - set(spans)
    if missing:
        logger.warning(
            "replace_text_in_xml: %d replacement(s) target unknown nodes: %s",
            len(missing),
            sorted(missing)[:10],
        )

    parts: List[str] = []
    cursor = len(xml)
    for index, (start, end) in sorted(spans.items(), key=lambda item: item[1][0], reverse=True):
        parts.append(xml[end:cursor])
        parts.append(encode_xml_entities(replacements[index]))
        cursor = start
    parts.append(xml[:cursor])
    return "".join(reversed(parts))
