"""
Label-context grouping of text fragments.

Word splits a single visual value ("25NL7PU1EYHFR8FDR4", "09-07-2025") into
several runs whenever formatting, spell-check or revision marks change
mid-word.  Within each paragraph the grouper glues such fragments back
together and remembers the nearest earlier label ("MRN:", "8 Odbiorca") so
the tagger sees ``value [po: "label"]`` instead of loose pieces.

Every fragment is tied back to its own ``<w:t>`` node by document position,
so results are written into the exact node the fragment came from even when
the same text occurs elsewhere in the document.
"""
from __future__ import annotations

import dataclasses
import re
from typing import Dict, List, Optional, Sequence

from app.services.run_extractor import Paragraph, Run
from app.services.xml_text_nodes import TextNode

KNOWN_LABELS = (
    "MRN", "VIN", "Data", "Numer", "Typ", "Kod", "Wartość", "Kwota",
    "Nadawca", "Odbiorca", "Eksporter", "Importer", "Nazwa", "Adres",
    "Kraj", "Miasto", "Ulica", "NIP", "REGON", "EORI", "Kontener",
    "Container", "Date", "Number", "Value", "Amount", "Masa", "Waga",
)
_KNOWN_LABELS_UPPER = tuple(label.upper() for label in KNOWN_LABELS)

# "8 Odbiorca", "35 Masa brutto (kg)"
_NUMBERED_LABEL_RE = re.compile(r"^\d+\s+[A-ZŻŹĆĄŚĘŁÓŃ][a-zżźćąśęłóń]*")
_NUMBERED_LABEL_MAX_LEN = 30

_KNOWN_PATTERNS = (
    re.compile(r"^\d{2}[A-Z]{2}[A-Z0-9]*$"),          # MRN: 2 digits + 2 letters + rest
    re.compile(r"^[A-HJ-NPR-Z0-9]{1,17}$"),           # VIN alphabet, up to 17 chars
    re.compile(r"^\d{1,2}[-./]?\d{0,2}[-./]?\d{0,4}$"),  # date fragment
    re.compile(r"^[A-Z]{1,4}\d{0,7}$"),               # container number
    re.compile(r"^[A-Z]{2,4}-?[A-Z0-9]*$"),           # reference code
)

_SHORT_FRAGMENT = 4
_DIGITS_RE = re.compile(r"^\d+$")
_UPPER_RE = re.compile(r"^[A-Z]+$")
_UPPER_ALNUM_RE = re.compile(r"^[A-Z0-9]+$")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class GroupMember:
    """One ``<w:t>`` fragment inside a group."""

    run: Run
    text: str
    text_node_index: int


@dataclasses.dataclass
class MergedGroup:
    index: int
    members: List[GroupMember]
    merged_text: str
    preceding_label: Optional[str] = None

    @property
    def member_runs(self) -> List[Run]:
        return [member.run for member in self.members]

    @property
    def member_text_node_indices(self) -> List[int]:
        return [member.text_node_index for member in self.members]

    def add(self, member: GroupMember) -> None:
        self.members.append(member)
        self.merged_text += member.text


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_label_text(text: str) -> bool:
    """True for "Nazwa:", "VIN", "mrn:", "8 Odbiorca" and the like."""
    trimmed = text.strip()
    if trimmed.endswith(":"):
        return True

    upper = trimmed.upper()
    for label in _KNOWN_LABELS_UPPER:
        if upper == label or upper.endswith(label + ":"):
            return True

    return bool(_NUMBERED_LABEL_RE.match(trimmed)) and len(trimmed) < _NUMBERED_LABEL_MAX_LEN


def is_part_of_known_pattern(text: str) -> bool:
    """True if *text* looks like (part of) an MRN, VIN, date, container or reference."""
    return any(pattern.match(text) for pattern in _KNOWN_PATTERNS)


def should_merge(prev_text: str, curr_text: str, merged_so_far: str) -> bool:
    """
    Decide whether *curr_text* continues the group that ended with *prev_text*.

    Rules, first match wins:
    a label (trailing ":") always closes the group; the combined text forming
    a known pattern merges; fragments of four characters or fewer merge;
    a dash or slash at the seam merges; digit+digit and LETTERS+ALNUM merge.
    Anything else starts a new group.
    """
    if prev_text.strip().endswith(":"):
        return False
    if is_part_of_known_pattern(merged_so_far + curr_text):
        return True
    if len(prev_text) <= _SHORT_FRAGMENT or len(curr_text) <= _SHORT_FRAGMENT:
        return True
    if prev_text.strip().endswith(("-", "/")):
        return True
    if curr_text.strip().startswith(("-", "/")):
        return True
    if _DIGITS_RE.match(prev_text) and _DIGITS_RE.match(curr_text):
        return True
    if _UPPER_RE.match(prev_text) and _UPPER_ALNUM_RE.match(curr_text):
        return True
    return False


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def group_paragraphs(
    paragraphs: Sequence[Paragraph],
    text_nodes: Sequence[TextNode],
) -> List[MergedGroup]:
    """
    Build merged groups for every paragraph, in document order.

    Only fragments with non-blank text take part, and only when their node
    in *text_nodes* still holds the same text.  ``preceding_label`` of a
    group is the last label seen earlier in the same paragraph.
    """
    nodes_by_index: Dict[int, TextNode] = {node.index: node for node in text_nodes}
    groups: List[MergedGroup] = []

    for paragraph in paragraphs:
        members: List[GroupMember] = []
        for run in paragraph.runs:
            for text, position in zip(run.texts, run.text_positions):
                if not text.strip():
                    continue
                node = nodes_by_index.get(position)
                if node is not None and node.text == text:
                    members.append(GroupMember(run=run, text=text, text_node_index=position))
        if not members:
            continue

        last_label: Optional[str] = members[0].text if is_label_text(members[0].text) else None
        current = MergedGroup(index=len(groups), members=[members[0]], merged_text=members[0].text)

        for prev, curr in zip(members, members[1:]):
            if should_merge(prev.text, curr.text, current.merged_text):
                current.add(curr)
                continue

            if current.merged_text.strip():
                current.preceding_label = last_label
                groups.append(current)
            if is_label_text(current.merged_text):
                last_label = current.merged_text.strip()
            current = MergedGroup(index=len(groups), members=[curr], merged_text=curr.text)

        if current.merged_text.strip():
            current.preceding_label = last_label
            groups.append(current)

    return groups


def label_context(label: Optional[str], max_chars: int = 30) -> Optional[str]:
    """Truncate a label for inline context: 30 chars then "..."."""
    if not label:
        return None
    return label[:max_chars] + "..." if len(label) > max_chars else label


def map_group_results(
    text_nodes: Sequence[TextNode],
    groups: Sequence[MergedGroup],
    results: Sequence[str],
) -> Dict[int, str]:
    """
    Translate per-group tagger output back to ``{text node index -> text}``.

    A group whose result became a tag writes the tag into its first valid
    member node and empties the other members; unchanged groups contribute
    nothing.
    """
    valid = {node.index for node in text_nodes}
    replacements: Dict[int, str] = {}
    for group, result in zip(groups, results):
        if result == group.merged_text or "{{" not in result or "}}" not in result:
            continue
        first = True
        for index in group.member_text_node_indices:
            if index not in valid:
                continue
            replacements[index] = result if first else ""
            first = False
    return replacements
