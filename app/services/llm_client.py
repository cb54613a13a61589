"""
OpenRouter chat-completions adapter.

The only outbound network dependency of the templater.  Calls never raise:
transport failures, non-200 responses and malformed payloads are logged
and surface as an empty string, so callers degrade to "nothing detected".

Public API
----------
OpenRouterClient.complete(messages, model, response_format)      -> str
OpenRouterClient.complete_json(messages, model, response_format) -> (ok, value)
parse_json_robust(text)                                          -> (ok, value)
get_llm_client()                                                 -> OpenRouterClient (FastAPI dependency)
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class OpenRouterClient:
    """
    Minimal async client for ``POST {base_url}/chat/completions``.

    Limits concurrency to ``max_concurrent`` simultaneous calls.  A custom
    ``httpx`` transport can be injected (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_concurrent: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = settings.OPENROUTER_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.OPENROUTER_BASE_URL).rstrip("/")
        self.timeout = httpx.Timeout(float(timeout or settings.LLM_TIMEOUT), connect=10.0)
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.LLM_MAX_CONCURRENT)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": settings.OPENROUTER_REFERER,
            "X-Title": settings.OPENROUTER_TITLE,
        }

    # ------------------------------------------------------------------
    # Core caller
    # ------------------------------------------------------------------

    async def complete(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Return the first choice's message content.

        Returns empty string on any error (no key, timeout, connection
        failure, non-200 response, unexpected payload).
        """
        if not self.configured:
            logger.warning("complete: OPENROUTER_API_KEY not configured, skipping LLM call")
            return ""

        payload: Dict[str, Any] = {
            "model": model or settings.TAGGER_MODEL,
            "messages": messages,
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or settings.LLM_MAX_TOKENS,
        }
        if response_format:
            payload["response_format"] = response_format

        async with self._semaphore:
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    resp = await client.post(
                        f"{self.base_url}/chat/completions",
                        headers=self._headers(),
                        json=payload,
                    )
            except httpx.TimeoutException:
                logger.error("complete: request timed out after %.0f s", self.timeout.read)
                return ""
            except httpx.HTTPError as exc:
                logger.error("complete: transport error - %s", exc)
                return ""

        if resp.status_code == 429:
            logger.error("complete: rate limit exceeded (HTTP 429), retry later")
            return ""
        if resp.status_code == 402:
            logger.error("complete: OpenRouter credits exhausted (HTTP 402)")
            return ""
        if resp.status_code != 200:
            logger.error(
                "complete: OpenRouter returned HTTP %d: %s",
                resp.status_code,
                resp.text[:300],
            )
            return ""

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("complete: unexpected response payload - %s", exc)
            return ""
        if not isinstance(content, str):
            logger.error("complete: message content is not a string")
            return ""
        return content

    async def complete_json(
        self,
        messages: List[Message],
        model: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
    ) -> Tuple[bool, Any]:
        """
        Call the LLM and parse the reply as JSON.

        Returns ``(success, parsed_value)``; an empty reply is ``(False, None)``.
        """
        text = await self.complete(
            messages, model=model, response_format=response_format, max_tokens=max_tokens
        )
        if not text:
            return False, None
        return parse_json_robust(text)


# ---------------------------------------------------------------------------
# Robust JSON parsing
# ---------------------------------------------------------------------------

def parse_json_robust(response: str) -> Tuple[bool, Any]:
    """
    Try multiple strategies to parse JSON from potentially messy LLM output.

    Handles:
    - Markdown code fences (```json … ```, ``` … ```)
    - Trailing commas before ] or }
    - Python-style True / False / None
    - Surrounding prose, by taking the first balanced [...] or {...} block
    - Missing closing bracket (adds one and retries)

    Returns ``(success, parsed_value)``.
    """
    if not response:
        return False, None

    text = response.strip()

    # Strategy 1: direct parse
    ok, val = _try_json(text)
    if ok:
        return True, val

    # Strategy 2: strip markdown code fences
    stripped = strip_code_fences(text)
    if stripped != text:
        ok, val = _try_json(stripped)
        if ok:
            return True, val
        text = stripped

    # Strategy 3: fix common JSON mangling
    fixed = _fix_json_issues(text)
    ok, val = _try_json(fixed)
    if ok:
        return True, val

    # Strategy 4: extract JSON structure from surrounding prose
    for bracket_pair in (("{", "}"), ("[", "]")):
        fragment = _extract_json_structure(text, *bracket_pair)
        if fragment:
            ok, val = _try_json(fragment)
            if ok:
                return True, val
            ok, val = _try_json(_fix_json_issues(fragment))
            if ok:
                return True, val

    # Strategy 5: attempt to close a truncated array / object
    for suffix in ("]", "}", "}]", "]}", "}]}"):
        ok, val = _try_json(fixed + suffix)
        if ok:
            logger.debug("parse_json_robust: recovered with suffix %r", suffix)
            return True, val

    logger.warning("parse_json_robust: all strategies failed. Preview: %s", response[:400])
    return False, None


def _try_json(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` delimiters that LLMs often wrap output in."""
    text = re.sub(r"^```(?:json)?\s*\n?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def _fix_json_issues(text: str) -> str:
    """Repair the most common JSON mangling patterns from LLMs."""
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\bNone\b", "null", text)
    return text.strip()


def _extract_json_structure(text: str, open_b: str, close_b: str) -> str:
    """
    Find the first complete balanced open_b … close_b structure in *text*.
    Returns the matched fragment, or empty string if not found.
    """
    start = text.find(open_b)
    if start == -1:
        return ""

    depth = 0
    in_string = False
    escape_next = False

    for i, ch in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_b:
            depth += 1
        elif ch == close_b:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

_default_client: Optional[OpenRouterClient] = None


def get_llm_client() -> OpenRouterClient:
    """Shared client built from settings; overridden in tests."""
    global _default_client
    if _default_client is None:
        _default_client = OpenRouterClient()
    return _default_client
