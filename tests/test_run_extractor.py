"""Tests for paragraph/run extraction and run-level rewriting."""
import pytest

from app.services.docx_container import DocxStructureError, EmptyDocumentError
from app.services.run_extractor import (
    RunChange,
    apply_run_changes,
    extract_paragraphs,
    extract_runs,
)
from tests.conftest import document_xml, para, run, table


def _texts(xml: str):
    return {r.id: r.text for r in extract_runs(xml)}


def test_body_and_table_paths():
    xml = document_xml(
        para(run("MRN: "), run("25PL", bold=True))
        + table([para(run("VIN:")), para(run("WAUENCF57JA005040"))])
        + para(run("Footer"), para_id="1A2B3C4D")
    )
    paragraphs = extract_paragraphs(xml)

    assert [p.debug_path for p in paragraphs] == ["P0", "T0:R0:C0:P0", "T0:R0:C1:P0", "P1"]
    assert [r.id for r in paragraphs[0].runs] == ["P0-0", "P0-1"]
    assert paragraphs[1].runs[0].id == "T0:R0:C0:P0-0"
    assert paragraphs[3].paragraph_id == "1A2B3C4D"
    assert paragraphs[3].runs[0].id == "1A2B3C4D-0"
    assert paragraphs[0].full_text_context == "MRN: 25PL"
    assert [p.index for p in paragraphs] == [0, 1, 2, 3]


def test_nested_table_path():
    inner = table([para(run("deep"))])
    xml = document_xml(table([para(run("outer")) + inner]))
    paths = [p.debug_path for p in extract_paragraphs(xml)]
    assert paths == ["T0:R0:C0:P0", "T0:R0:C0:T0:R0:C0:P0"]


def test_empty_runs_keep_their_ordinal():
    xml = document_xml(para(run("A"), "<w:r><w:t></w:t></w:r>", run("B")))
    assert [r.id for r in extract_runs(xml)] == ["P0-0", "P0-2"]


def test_paragraphs_without_text_are_skipped():
    xml = document_xml(para() + para(run("text")))
    paragraphs = extract_paragraphs(xml)
    assert len(paragraphs) == 1
    assert paragraphs[0].debug_path == "P1"


def test_formatting_is_decoded():
    xml = document_xml(
        para(
            run("bold", bold=True, size=24),
            '<w:r><w:rPr><w:b w:val="0"/><w:color w:val="FF0000"/></w:rPr><w:t>red</w:t></w:r>',
        )
    )
    bold_run, red_run = extract_runs(xml)
    assert bold_run.formatting.to_dict() == {"bold": True, "font_size": "12pt"}
    assert bold_run.formatting.describe() == "bold,size:12pt"
    assert red_run.formatting.bold is False
    assert red_run.formatting.color == "#FF0000"


def test_tab_adds_space_to_context():
    xml = document_xml(para(run("Kod:"), "<w:r><w:tab/><w:t>PL</w:t></w:r>"))
    assert extract_paragraphs(xml)[0].full_text_context == "Kod: PL"


def test_extract_runs_on_empty_body():
    with pytest.raises(EmptyDocumentError):
        extract_runs(document_xml(para()))


def test_malformed_xml():
    with pytest.raises(DocxStructureError):
        extract_paragraphs("<w:document><unclosed>")


def test_apply_change_and_highlight():
    xml = document_xml(para(run("MRN: "), run("25PL7PU1")))
    new_xml, applied = apply_run_changes(
        xml, [RunChange(id="P0-1", new_text="{{mrnNumber}}", highlight=True)]
    )
    assert applied == 1
    assert _texts(new_xml) == {"P0-0": "MRN: ", "P0-1": "{{mrnNumber}}"}
    assert 'w:highlight w:val="yellow"' in new_xml


def test_unknown_run_ids_are_ignored():
    xml = document_xml(para(run("text")))
    new_xml, applied = apply_run_changes(xml, [RunChange(id="P9-0", new_text="x")])
    assert applied == 0
    assert _texts(new_xml) == {"P0-0": "text"}


def test_multi_text_run_collapses_into_first_node():
    xml = document_xml(para("<w:r><w:t>25PL</w:t><w:t>7PU1</w:t></w:r>"))
    new_xml, applied = apply_run_changes(xml, [RunChange(id="P0-0", new_text="{{mrn}}")])
    assert applied == 1
    run_ = extract_runs(new_xml)[0]
    assert run_.texts == ["{{mrn}}"]


def test_empty_new_text_clears_without_highlight():
    xml = document_xml(para(run("{{vin"), run("Number}}")))
    new_xml, applied = apply_run_changes(
        xml, [RunChange(id="P0-1", new_text="", highlight=True)]
    )
    assert applied == 1
    assert _texts(new_xml) == {"P0-0": "{{vin"}
    assert "w:highlight" not in new_xml


def test_stale_original_text_skips_change():
    xml = document_xml(para(run("current")))
    new_xml, applied = apply_run_changes(
        xml, [RunChange(id="P0-0", new_text="x", original_text="something else")]
    )
    assert applied == 0
    assert _texts(new_xml) == {"P0-0": "current"}


def test_last_change_per_id_wins():
    xml = document_xml(para(run("a")))
    new_xml, _ = apply_run_changes(
        xml, [RunChange(id="P0-0", new_text="first"), RunChange(id="P0-0", new_text="second")]
    )
    assert _texts(new_xml) == {"P0-0": "second"}


# ---------------------------------------------------------------------------
# Wrapped runs and content controls
# ---------------------------------------------------------------------------

def _hyperlink(*runs: str) -> str:
    return '<w:hyperlink w:anchor="vehicle">' + "".join(runs) + "</w:hyperlink>"


def test_runs_inside_hyperlinks_and_insertions_are_extracted():
    xml = document_xml(
        para(
            run("VIN: "),
            _hyperlink(run("WMZ83BR06P3R14626")),
            '<w:ins w:id="1" w:author="Jan">' + run(" (poprawiony)") + "</w:ins>",
        )
    )
    assert _texts(xml) == {
        "P0-0": "VIN: ",
        "P0-1": "WMZ83BR06P3R14626",
        "P0-2": " (poprawiony)",
    }
    assert extract_paragraphs(xml)[0].full_text_context == "VIN: WMZ83BR06P3R14626 (poprawiony)"


def test_textbox_runs_stay_out_of_the_host_paragraph():
    textbox = (
        "<w:r><w:pict><w:txbxContent>"
        + para(run("inside box"))
        + "</w:txbxContent></w:pict></w:r>"
    )
    paragraphs = extract_paragraphs(document_xml(para(run("host"), textbox)))
    assert [p.debug_path for p in paragraphs] == ["P0"]
    assert [r.text for r in paragraphs[0].runs] == ["host"]


def test_content_control_blocks_are_walked():
    sdt = "<w:sdt><w:sdtPr/><w:sdtContent>" + para(run("in control")) + "</w:sdtContent></w:sdt>"
    row_sdt = (
        "<w:tbl><w:sdt><w:sdtContent><w:tr><w:tc>"
        + para(run("row control"))
        + "</w:tc></w:tr></w:sdtContent></w:sdt></w:tbl>"
    )
    xml = document_xml(para(run("before")) + sdt + row_sdt + para(run("after")))
    paths = [p.debug_path for p in extract_paragraphs(xml)]
    assert paths == ["P0", "P1", "T0:R0:C0:P0", "P2"]


def test_changes_reach_wrapped_runs():
    xml = document_xml(
        para(run("VIN: "), _hyperlink(run("WMZ83BR06P3R14626")))
        + "<w:sdt><w:sdtContent>"
        + para(run("2025-07-09"))
        + "</w:sdtContent></w:sdt>"
    )
    new_xml, applied = apply_run_changes(
        xml,
        [
            RunChange(id="P0-1", new_text="{{vinNumber}}", original_text="WMZ83BR06P3R14626"),
            RunChange(id="P1-0", new_text="{{issueDate}}", original_text="2025-07-09"),
        ],
    )
    assert applied == 2
    assert _texts(new_xml) == {"P0-0": "VIN: ", "P0-1": "{{vinNumber}}", "P1-0": "{{issueDate}}"}
    assert "<w:hyperlink" in new_xml
    assert "<w:sdtContent>" in new_xml


def test_text_positions_follow_document_order():
    xml = document_xml(
        para(run("a"), "<w:r><w:t/></w:r>", "<w:r><w:t>b</w:t><w:t>c</w:t></w:r>")
    )
    a, bc = extract_runs(xml)
    assert a.text_positions == [0]
    assert bc.text_positions == [2, 3]
