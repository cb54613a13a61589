"""Tests for the variable tagger and its reply repair."""
import json

import pytest

from app.config import settings
from app.services.taxonomy import load_taxonomy
from app.services.variable_tagger import (
    Invalid,
    Ok,
    Truncated,
    VariableTagger,
    annotate,
    find_variables,
    normalize_length,
    parse_tag_array,
)


# ---------------------------------------------------------------------------
# Reply repair
# ---------------------------------------------------------------------------

def test_parse_complete_array():
    assert parse_tag_array('["a", "{{b}}"]') == Ok(["a", "{{b}}"])


def test_parse_fenced_array():
    assert parse_tag_array('```json\n["a", "{{b}}"]\n```') == Ok(["a", "{{b}}"])


def test_parse_array_inside_prose():
    assert parse_tag_array('Here you go: ["x"] hope it helps') == Ok(["x"])


def test_parse_non_strings_become_holes():
    assert parse_tag_array('["a", 1, null]') == Ok(["a", None, None])


def test_parse_truncated_inside_string():
    result = parse_tag_array('["a", "b", "{{vinNu')
    assert result == Truncated(["a", "b"], strategy="closed")


def test_parse_truncated_after_element():
    result = parse_tag_array('["a", "b",')
    assert result == Truncated(["a", "b"], strategy="closed")


def test_parse_falls_back_to_scanning_strings():
    result = parse_tag_array('["a", "b" "c"')
    assert result == Truncated(["a", "b", "c"], strategy="scanned")


@pytest.mark.parametrize("content", ["", "   ", "no array here", "{\"changes\": 1}"])
def test_parse_invalid(content):
    assert isinstance(parse_tag_array(content), Invalid)


def test_normalize_length_pads_and_trims():
    assert normalize_length(["{{x}}"], ["a", "b"]) == ["{{x}}", "b"]
    assert normalize_length(["a", "b", "c"], ["a", "b"]) == ["a", "b"]
    assert normalize_length([None, "{{y}}"], ["a", "b"]) == ["a", "{{y}}"]


def test_find_variables():
    variables = find_variables(
        ["VIN:", "WAUENCF57JA005040", "same"],
        ["VIN:", "{{vinNumber}}", "same"],
    )
    assert len(variables) == 1
    assert variables[0].tag == "{{vinNumber}}"
    assert variables[0].variable_name == "vinNumber"
    assert variables[0].original_text == "WAUENCF57JA005040"
    assert variables[0].source_index == 1


def test_annotate():
    assert annotate("x") == "x"
    assert annotate("x", "MRN:") == 'x [po: "MRN:"]'
    assert annotate("x", "MRN:", "bold") == 'x [po: "MRN:"] [bold]'


# ---------------------------------------------------------------------------
# Tagger against a scripted model
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tag_sends_label_context(fake_llm):
    fake_llm.replies = [json.dumps(["MRN:", "{{mrnNumber}}"])]
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["MRN:", "25NL7PU1EYHFR8FDR4"], labels=[None, "MRN:"])

    assert result.outputs == ["MRN:", "{{mrnNumber}}"]
    assert result.parse_state == "ok"
    request = fake_llm.requests[0]
    assert request["model"] == settings.TAGGER_MODEL
    assert request["messages"][0]["content"] == load_taxonomy().render_system_prompt()
    assert '25NL7PU1EYHFR8FDR4 [po: \\"MRN:\\"]' in request["messages"][1]["content"]


@pytest.mark.asyncio
async def test_tag_short_reply_is_padded(fake_llm):
    fake_llm.replies = [json.dumps(["{{issueDate}}"])]
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["09-07-2025", "Łącznie", "Opis"])
    assert result.outputs == ["{{issueDate}}", "Łącznie", "Opis"]


@pytest.mark.asyncio
async def test_tag_reverts_malformed_and_constant_tags(fake_llm):
    fake_llm.replies = [json.dumps(["{{bad tag}}", "{{countryCode}}", "{{ownerName}}"])]
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["Jan", "PL", "KUBICZ DANIEL"])
    assert result.outputs == ["Jan", "PL", "{{ownerName}}"]
    assert result.reverted == 2


@pytest.mark.asyncio
async def test_tag_truncated_reply(fake_llm):
    fake_llm.replies = ['["{{vinNumber}}", "Opis", "{{mrnNu']
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["WAUENCF57JA005040", "Opis", "25NL7PU1EYHFR8FDR4"])
    assert result.parse_state == "truncated"
    assert result.outputs == ["{{vinNumber}}", "Opis", "25NL7PU1EYHFR8FDR4"]


@pytest.mark.asyncio
async def test_tag_unusable_reply_keeps_texts(fake_llm):
    fake_llm.replies = ["I cannot help with that."]
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["a", "b"])
    assert result.parse_state == "invalid"
    assert result.outputs == ["a", "b"]


@pytest.mark.asyncio
async def test_tag_http_error_keeps_texts(fake_llm):
    fake_llm.status_code = 429
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())

    result = await tagger.tag(["a"])
    assert result.outputs == ["a"]
    assert result.raw_response == ""


@pytest.mark.asyncio
async def test_tag_empty_input_skips_model(fake_llm):
    tagger = VariableTagger(fake_llm.client(), load_taxonomy())
    result = await tagger.tag([])
    assert result.outputs == []
    assert fake_llm.requests == []
