"""
Tagging taxonomy: what the tagger must leave alone and what it should tag.

The taxonomy is data, loaded from a versioned JSON file and passed into the
tagger.  The system prompt is rendered from it, and constant detection can
be checked without any model call.
"""
from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Set

from pydantic import BaseModel, Field

from app.config import settings

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


def _canon(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().upper()


class ConstantGroup(BaseModel):
    """Literal values that repeat identically across documents."""

    name: str
    values: List[str] = Field(default_factory=list)


class VariableCategory(BaseModel):
    """A kind of per-document value and the tag names to use for it."""

    name: str
    tags: List[str]
    examples: List[str] = Field(default_factory=list)
    description: str = ""
    pattern_hint: Optional[str] = None  # regex describing the usual shape


class FewShotExample(BaseModel):
    input: List[str]
    output: List[str]


class TaggingTaxonomy(BaseModel):
    """Versioned configuration handed to the tagger."""

    version: str
    domain: str = ""
    constants: List[ConstantGroup] = Field(default_factory=list)
    variables: List[VariableCategory] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    examples: List[FewShotExample] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: str | Path) -> "TaggingTaxonomy":
        raw = Path(path).read_text(encoding="utf-8")
        taxonomy = cls.model_validate_json(raw)
        logger.info(
            "Loaded taxonomy %s v%s (%d constants, %d variable categories)",
            Path(path).name,
            taxonomy.version,
            len(taxonomy.constant_values()),
            len(taxonomy.variables),
        )
        return taxonomy

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def constant_values(self) -> Set[str]:
        return {_canon(value) for group in self.constants for value in group.values}

    def is_constant(self, text: str) -> bool:
        """Case- and whitespace-insensitive membership in any constant group."""
        canon = _canon(text)
        return bool(canon) and canon in self.constant_values()

    def tag_names(self) -> Set[str]:
        return {tag for category in self.variables for tag in category.tags}

    # ------------------------------------------------------------------
    # Prompt rendering
    # ------------------------------------------------------------------

    def render_system_prompt(self) -> str:
        lines: List[str] = [
            f"You are an expert in analysing {self.domain or 'business'} documents.",
            "",
            "TASK: return EXACTLY the same array of texts, replacing ONLY variable data "
            "with {{camelCaseTag}} placeholders.",
            "",
            'Texts may carry label context as [po: "LABEL"]: the label that preceded the '
            "value in the document. Use it to recognise the value, but never copy it "
            "into the output.",
            "",
            "CONSTANT VALUES - NEVER REPLACE (identical in every document):",
        ]
        for group in self.constants:
            quoted = ", ".join(json.dumps(v, ensure_ascii=False) for v in group.values)
            lines.append(f"- {group.name}: {quoted}")

        lines += ["", "VARIABLE DATA - REPLACE WITH {{tags}} (differs between documents):"]
        for number, category in enumerate(self.variables, start=1):
            tags = ", ".join("{{" + tag + "}}" for tag in category.tags)
            lines.append(f"{number}. {category.name} -> {tags}")
            if category.description:
                lines.append(f"   {category.description}")
            if category.pattern_hint:
                lines.append(f"   Usual shape: {category.pattern_hint}")
            if category.examples:
                examples = ", ".join(json.dumps(e, ensure_ascii=False) for e in category.examples)
                lines.append(f"   Examples: {examples}")

        lines += ["", "RULES:"]
        lines += [f"{number}. {rule}" for number, rule in enumerate(self.rules, start=1)]

        if self.examples:
            lines += ["", "EXAMPLES:"]
            for example in self.examples:
                lines.append("Input: " + json.dumps(example.input, ensure_ascii=False))
                lines.append("Output: " + json.dumps(example.output, ensure_ascii=False))
                lines.append("")

        return "\n".join(lines).rstrip() + "\n"


@lru_cache(maxsize=4)
def load_taxonomy(path: Optional[str] = None) -> TaggingTaxonomy:
    """Load (and cache) the taxonomy at *path*, defaulting to settings.TAXONOMY_PATH."""
    return TaggingTaxonomy.from_file(path or settings.TAXONOMY_PATH)
