"""Tests for mapping {{tags}} in a template back to run ids."""
from app.services.tag_mapper import map_tags_to_run_ids, template_tags
from tests.conftest import document_xml, para, run


def test_whole_tag_in_one_run():
    mappings = map_tags_to_run_ids(document_xml(para(run("VIN: {{vinNumber}}"))))
    assert [m.to_dict() for m in mappings] == [
        {
            "tag": "vinNumber",
            "run_id": "P0-0",
            "original_text": "{{vinNumber}}",
            "full_run_text": "VIN: {{vinNumber}}",
            "is_clear": False,
        }
    ]


def test_several_tags_in_one_run():
    mappings = map_tags_to_run_ids(document_xml(para(run("{{city}}, {{postalCode}}"))))
    assert [(m.tag, m.run_id) for m in mappings] == [("city", "P0-0"), ("postalCode", "P0-0")]


def test_split_tag_maps_first_run_and_clears_the_rest():
    xml = document_xml(para(run("Nr "), run("{{vin"), run("Num"), run("ber}}"), run(" koniec")))
    mappings = map_tags_to_run_ids(xml)

    tag, *clears = mappings
    assert (tag.tag, tag.run_id, tag.original_text, tag.full_run_text) == (
        "vinNumber", "P0-1", "{{vinNumber}}", "{{vinNumber}}",
    )
    assert [(m.tag, m.run_id, m.cleared_tag) for m in clears] == [
        ("__CLEAR_vinNumber_2", "P0-2", "vinNumber"),
        ("__CLEAR_vinNumber_3", "P0-3", "vinNumber"),
    ]
    assert all(m.is_clear for m in clears)
    assert template_tags(mappings) == ["vinNumber"]


def test_same_tag_in_different_paragraphs_is_mapped_twice():
    xml = document_xml(para(run("{{ownerName}}")) + para(run("Podpis: {{ownerName}}")))
    mappings = map_tags_to_run_ids(xml)
    assert [m.run_id for m in mappings] == ["P0-0", "P1-0"]
    assert template_tags(mappings) == ["ownerName"]


def test_paragraphs_without_tags_are_ignored():
    xml = document_xml(para(run("plain text")) + para(run("{ not a tag }")))
    assert map_tags_to_run_ids(xml) == []


def test_closing_run_with_another_tag_is_folded_into_the_first_run():
    xml = document_xml(para(run("{{vin"), run("Number}} / {{issueDate}}")))
    mappings = map_tags_to_run_ids(xml)

    assert [(m.tag, m.run_id, m.full_run_text) for m in mappings] == [
        ("vinNumber", "P0-0", "{{vinNumber}} / {{issueDate}}"),
        ("issueDate", "P0-0", "{{vinNumber}} / {{issueDate}}"),
        ("__CLEAR_vinNumber_1", "P0-1", "Number}} / {{issueDate}}"),
    ]
    assert mappings[-1].span_run_id == "P0-0"
    assert template_tags(mappings) == ["vinNumber", "issueDate"]


def test_span_continues_while_a_tag_is_open():
    xml = document_xml(para(run("{{vin"), run("Number}} {{issue"), run("Date}}"), run(" end")))
    mappings = map_tags_to_run_ids(xml)

    assert [(m.tag, m.run_id) for m in mappings] == [
        ("vinNumber", "P0-0"),
        ("issueDate", "P0-0"),
        ("__CLEAR_vinNumber_1", "P0-1"),
        ("__CLEAR_vinNumber_2", "P0-2"),
    ]
