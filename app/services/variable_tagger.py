"""
Variable tagger: LLM adapter that turns an array of texts into a parallel
array of "unchanged text or {{camelCaseTag}}".

The model reply is parsed by an explicit repair state machine

    strip fences -> extract array -> trim to last complete element -> close
                 -> scan individual quoted strings -> give up

whose outcome is one of :class:`Ok`, :class:`Truncated` or :class:`Invalid`.
Whatever happens, :meth:`VariableTagger.tag` returns exactly one output per
input and never raises; the worst case is "no variables found".
"""
from __future__ import annotations

import dataclasses
import json
import logging
import re
from typing import List, Optional, Sequence, Tuple, Union

from app.config import settings
from app.services.label_grouper import label_context
from app.services.llm_client import OpenRouterClient, strip_code_fences
from app.services.taxonomy import TaggingTaxonomy

logger = logging.getLogger(__name__)

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_QUOTED_RE = re.compile(r'"(?:[^"\\]|\\.)*"')
_TRAILING_COMMA_RE = re.compile(r",\s*$")

TAG_RE = re.compile(r"\{\{(\w+)\}\}")
WELL_FORMED_TAG_RE = re.compile(r"\{\{[a-zA-Z0-9]+\}\}")


# ---------------------------------------------------------------------------
# Parse results
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Ok:
    """The reply was (or contained) a complete JSON array."""

    values: List[Optional[str]]


@dataclasses.dataclass(frozen=True)
class Truncated:
    """The reply was cut off; *values* is what could be recovered."""

    values: List[Optional[str]]
    strategy: str


@dataclasses.dataclass(frozen=True)
class Invalid:
    reason: str


ParseResult = Union[Ok, Truncated, Invalid]


def _as_strings(values: list) -> List[Optional[str]]:
    # Non-string elements are kept as holes and reverted to the input later
    return [value if isinstance(value, str) else None for value in values]


def _close_truncated_array(cleaned: str) -> Optional[str]:
    start = cleaned.find("[")
    if start == -1:
        return None
    candidate = cleaned[start:]
    last_quote = candidate.rfind('"')
    last_comma = candidate.rfind(",")
    if last_quote > last_comma:
        # An odd number of quotes after the last comma means an unterminated string
        if candidate[last_comma + 1:].count('"') % 2 == 1:
            candidate = candidate[:last_comma]
    candidate = _TRAILING_COMMA_RE.sub("", candidate)
    if not candidate.endswith("]"):
        candidate += "]"
    return candidate


def _scan_quoted_strings(cleaned: str) -> List[str]:
    start = cleaned.find("[")
    if start == -1:
        return []
    elements: List[str] = []
    for match in _QUOTED_RE.finditer(cleaned[start + 1:]):
        try:
            elements.append(json.loads(match.group(0)))
        except ValueError:
            continue
    return elements


def parse_tag_array(content: str) -> ParseResult:
    """Run the repair state machine over a raw model reply."""
    if not content or not content.strip():
        return Invalid("empty response")

    cleaned = strip_code_fences(content.strip())

    match = _ARRAY_RE.search(cleaned)
    if match:
        candidate, truncated = match.group(0), False
    else:
        candidate, truncated = _close_truncated_array(cleaned), True

    if candidate is not None:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            if truncated:
                return Truncated(_as_strings(parsed), strategy="closed")
            return Ok(_as_strings(parsed))

    scanned = _scan_quoted_strings(cleaned)
    if scanned:
        return Truncated(list(scanned), strategy="scanned")

    return Invalid("no JSON array found in response")


def normalize_length(values: Sequence[Optional[str]], inputs: Sequence[str]) -> List[str]:
    """
    Force *values* to the length of *inputs*.

    Missing tail elements and non-string holes are filled from the inputs;
    surplus elements are dropped.
    """
    if len(values) != len(inputs):
        logger.warning(
            "Tagger length mismatch: expected %d, got %d; normalising against input",
            len(inputs),
            len(values),
        )
    return [
        values[i] if i < len(values) and values[i] is not None else text
        for i, text in enumerate(inputs)
    ]


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Variable:
    original_text: str
    tag: str             # "{{vinNumber}}"
    variable_name: str   # "vinNumber"
    source_index: int


def is_variable(original: str, result: str) -> bool:
    return result != original and "{{" in result and "}}" in result and bool(TAG_RE.search(result))


def find_variables(inputs: Sequence[str], outputs: Sequence[str]) -> List[Variable]:
    """One :class:`Variable` per output that turned into a tag."""
    variables: List[Variable] = []
    for index, (original, result) in enumerate(zip(inputs, outputs)):
        if not is_variable(original, result):
            continue
        name = TAG_RE.search(result).group(1)
        variables.append(
            Variable(
                original_text=original,
                tag="{{" + name + "}}",
                variable_name=name,
                source_index=index,
            )
        )
    return variables


# ---------------------------------------------------------------------------
# Tagger
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class TaggingResult:
    outputs: List[str]
    raw_response: str
    parse_state: str          # "ok" | "truncated" | "invalid"
    reverted: int = 0         # outputs discarded as malformed or constant


def annotate(text: str, label: Optional[str] = None, formatting: Optional[str] = None) -> str:
    """Append inline context: ``text [po: "label"]`` and/or ``text [bold,size:12pt]``."""
    if label:
        text = f'{text} [po: "{label}"]'
    if formatting:
        text = f"{text} [{formatting}]"
    return text


class VariableTagger:
    """Classifies texts as constant or variable using a taxonomy-driven prompt."""

    def __init__(
        self,
        client: OpenRouterClient,
        taxonomy: TaggingTaxonomy,
        model: Optional[str] = None,
        label_max_chars: Optional[int] = None,
    ) -> None:
        self.client = client
        self.taxonomy = taxonomy
        self.model = model or settings.TAGGER_MODEL
        self.label_max_chars = label_max_chars or settings.LABEL_CONTEXT_MAX_CHARS

    def build_messages(self, annotated: Sequence[str]) -> List[dict]:
        user_prompt = (
            f"Analyse these {len(annotated)} text fragments from a document "
            '(with label context [po: "..."]) and return a JSON array with '
            "placeholders (WITHOUT the label context in the output):\n\n"
            + json.dumps(list(annotated), ensure_ascii=False, indent=2)
        )
        return [
            {"role": "system", "content": self.taxonomy.render_system_prompt()},
            {"role": "user", "content": user_prompt},
        ]

    async def tag(
        self,
        texts: Sequence[str],
        labels: Optional[Sequence[Optional[str]]] = None,
        formats: Optional[Sequence[Optional[str]]] = None,
    ) -> TaggingResult:
        """
        Return one output per input: the input itself or a ``{{tag}}``.

        *labels* and *formats* are optional per-text context, sent inline but
        never expected back.
        """
        texts = list(texts)
        if not texts:
            return TaggingResult(outputs=[], raw_response="", parse_state="ok")

        annotated = [
            annotate(
                text,
                label_context(labels[i], self.label_max_chars) if labels else None,
                formats[i] if formats else None,
            )
            for i, text in enumerate(texts)
        ]

        raw = await self.client.complete(self.build_messages(annotated), model=self.model)
        logger.info("Tagger reply: %d chars for %d texts", len(raw), len(texts))

        result = parse_tag_array(raw)
        if isinstance(result, Ok):
            values, state = result.values, "ok"
        elif isinstance(result, Truncated):
            logger.warning(
                "Tagger reply was truncated, recovered %d elements (%s)",
                len(result.values),
                result.strategy,
            )
            values, state = result.values, "truncated"
        else:
            logger.warning("Tagger reply unusable (%s), keeping original texts", result.reason)
            values, state = list(texts), "invalid"

        outputs = normalize_length(values, texts)
        outputs, reverted = self._enforce_well_formed(texts, outputs)
        return TaggingResult(outputs=outputs, raw_response=raw, parse_state=state, reverted=reverted)

    def _enforce_well_formed(self, texts: List[str], outputs: List[str]) -> Tuple[List[str], int]:
        checked: List[str] = []
        reverted = 0
        for original, result in zip(texts, outputs):
            if result == original:
                checked.append(result)
                continue
            if not WELL_FORMED_TAG_RE.fullmatch(result):
                logger.warning("Reverting malformed tagger output %r for %r", result[:80], original[:80])
            elif self.taxonomy.is_constant(original):
                logger.warning("Reverting tag %s on constant %r", result, original[:80])
            else:
                checked.append(result)
                continue
            checked.append(original)
            reverted += 1
        return checked, reverted
