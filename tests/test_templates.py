"""Tests for template creation, inspection, filling and deletion."""
import base64
import json

import pytest
from httpx import AsyncClient

from app.main import app
from app.services.job_manager import job_manager
from app.services.llm_client import get_llm_client
from app.services.run_extractor import extract_runs
from tests.conftest import (
    AUTH_HEADERS,
    make_docx,
    para,
    read_xml,
    run,
    run_delta_responder,
    tagging_responder,
)

BODY = (
    para(run("VIN: "), run("WAUENCF57JA005040"))
    + para(run("Data: "), run("09-07-2025"))
    + para(run("Odbiorca: "), run("KUBICZ DANIEL"))
)
VALUES = {
    "WAUENCF57JA005040": "{{vinNumber}}",
    "09-07-2025": "{{issueDate}}",
    "KUBICZ DANIEL": "{{ownerName}}",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _upload(client: AsyncClient, body: str = BODY) -> int:
    resp = await client.post(
        "/api/documents/upload",
        headers=AUTH_HEADERS,
        files={"file": ("Deklaracja.docx", make_docx(body), "application/octet-stream")},
    )
    assert resp.status_code == 201
    return resp.json()["id"]


async def _processed_document(client: AsyncClient, db_session, fake_llm) -> int:
    """Upload a document and run the batch pipeline on it."""
    fake_llm.responder = run_delta_responder(VALUES)
    document_id = await _upload(client)
    resp = await client.post(f"/api/documents/{document_id}/pipeline/start", headers=AUTH_HEADERS)
    assert resp.status_code == 202
    await job_manager.wait(document_id)
    db_session.expire_all()
    return document_id


async def _create_template(client: AsyncClient, document_id: int, **extra) -> dict:
    resp = await client.post(
        "/api/templates/", json={"document_id": document_id, **extra}, headers=AUTH_HEADERS
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _filled_texts(fill_response: dict):
    docx_bytes = base64.b64decode(fill_response["base64"])
    return {r.id: r.text for r in extract_runs(read_xml(docx_bytes))}


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_template_from_pipeline_result(client: AsyncClient, db_session, fake_llm):
    document_id = await _processed_document(client, db_session, fake_llm)

    template = await _create_template(client, document_id)

    assert template["name"] == "Deklaracja.docx - Template"
    assert template["original_document_id"] == document_id
    assert template["tag_metadata"] == {
        "vinNumber": "WAUENCF57JA005040",
        "issueDate": "09-07-2025",
        "ownerName": "KUBICZ DANIEL",
    }
    assert template["tag_count"] == 3
    assert template["storage_path"] == f"processed/{document_id}/Deklaracja_processed.docx"

    resp = await client.get(f"/api/documents/{document_id}", headers=AUTH_HEADERS)
    assert resp.json()["template_id"] == template["id"]
    assert resp.json()["status"] == "verified"


@pytest.mark.asyncio
async def test_create_template_from_detected_fields(client: AsyncClient, fake_llm):
    fake_llm.responder = tagging_responder({"KUBICZ DANIEL": "{{ownerName}}"})
    document_id = await _upload(client)
    resp = await client.post(f"/api/documents/{document_id}/template", headers=AUTH_HEADERS)
    assert resp.status_code == 200

    template = await _create_template(client, document_id, name="Odprawa")

    assert template["name"] == "Odprawa"
    assert template["tag_metadata"] == {"ownerName": "KUBICZ DANIEL"}
    assert template["storage_path"] == f"templates/{document_id}/Deklaracja_szablon.docx"


@pytest.mark.asyncio
async def test_create_template_from_unprocessed_document(client: AsyncClient):
    document_id = await _upload(client)
    resp = await client.post(
        "/api/templates/", json={"document_id": document_id}, headers=AUTH_HEADERS
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_list_and_get_templates(client: AsyncClient, db_session, fake_llm):
    resp = await client.get("/api/templates/", headers=AUTH_HEADERS)
    assert resp.json() == []

    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)

    resp = await client.get("/api/templates/", headers=AUTH_HEADERS)
    assert [t["id"] for t in resp.json()] == [template["id"]]

    resp = await client.get(f"/api/templates/{template['id']}", headers=AUTH_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["tags"] == ["vinNumber", "issueDate", "ownerName"]

    resp = await client.get("/api/templates/999999", headers=AUTH_HEADERS)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_template_tags(client: AsyncClient, db_session, fake_llm):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)

    resp = await client.get(f"/api/templates/{template['id']}/tags", headers=AUTH_HEADERS)
    assert resp.status_code == 200
    data = resp.json()
    assert data["tags"] == ["vinNumber", "issueDate", "ownerName"]
    assert [(m["tag"], m["run_id"], m["is_clear"]) for m in data["mappings"]] == [
        ("vinNumber", "P0-1", False),
        ("issueDate", "P1-1", False),
        ("ownerName", "P2-1", False),
    ]


# ---------------------------------------------------------------------------
# Fill
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fill_with_basic_matching(client: AsyncClient, db_session, fake_llm, storage):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)
    app.dependency_overrides[get_llm_client] = lambda: fake_llm.client(api_key="")

    resp = await client.post(
        f"/api/templates/{template['id']}/fill",
        json={
            "ocr_fields": [
                {"tag": "vin_number", "value": "1C4SDJH91PC687665", "label": "VIN"},
                {"tag": "issueDate", "value": "14.01.2025", "confidence": "high"},
            ]
        },
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()

    assert _filled_texts(data) == {
        "P0-0": "VIN: ",
        "P0-1": "1C4SDJH91PC687665",
        "P1-0": "Data: ",
        "P1-1": "14.01.2025",
        "P2-0": "Odbiorca: ",
        "P2-1": "{{ownerName}}",
    }
    assert [(m["template_tag"], m["match_type"]) for m in data["matched_fields"]] == [
        ("vinNumber", "similar"),
        ("issueDate", "exact"),
    ]
    assert data["unmatched_tags"] == ["ownerName"]
    assert data["stats"]["replacements_made"] == 2
    assert data["stats"]["ai_matching_used"] is False
    assert data["template_name"] == "Deklaracja.docx - Template"
    assert data["filename"].startswith("wypelniony_Deklaracja_docx___Template_")
    assert data["storage_path"].startswith("filled/test-user-1/")
    assert await storage.exists(data["storage_path"])


@pytest.mark.asyncio
async def test_fill_with_ai_matching(client: AsyncClient, db_session, fake_llm):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)
    fake_llm.responder = lambda payload: json.dumps(
        {
            "matches": [
                {"templateTag": "ownerName", "ocrTag": "importer", "ocrValue": "TOMASZ DUDA"},
                {"templateTag": "vinNumber", "ocrTag": None, "ocrValue": None},
                {"templateTag": "issueDate", "ocrTag": None, "ocrValue": None},
            ]
        }
    )

    resp = await client.post(
        f"/api/templates/{template['id']}/fill",
        json={"ocr_fields": [{"tag": "importer", "value": "TOMASZ DUDA", "label": "Importer"}]},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["stats"]["ai_matching_used"] is True
    assert [(m["template_tag"], m["ocr_label"], m["match_type"]) for m in data["matched_fields"]] == [
        ("ownerName", "Importer", "ai_matched"),
    ]
    assert _filled_texts(data)["P2-1"] == "TOMASZ DUDA"
    assert data["unmatched_tags"] == ["vinNumber", "issueDate"]


@pytest.mark.asyncio
async def test_fill_requires_ocr_fields(client: AsyncClient, db_session, fake_llm):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)

    resp = await client.post(f"/api/templates/{template['id']}/fill", json={}, headers=AUTH_HEADERS)
    assert resp.status_code == 422
    data = resp.json()
    assert data["success"] is False
    assert "ocr_fields" in data["error"]


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_template_keeps_file_used_by_document(client: AsyncClient, db_session, fake_llm, storage):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)

    resp = await client.delete(f"/api/templates/{template['id']}", headers=AUTH_HEADERS)
    assert resp.status_code == 204

    assert await storage.exists(template["storage_path"])
    resp = await client.get(f"/api/templates/{template['id']}", headers=AUTH_HEADERS)
    assert resp.status_code == 404
    resp = await client.get(f"/api/documents/{document_id}", headers=AUTH_HEADERS)
    assert resp.json()["template_id"] is None


@pytest.mark.asyncio
async def test_template_survives_document_delete(client: AsyncClient, db_session, fake_llm, storage):
    document_id = await _processed_document(client, db_session, fake_llm)
    template = await _create_template(client, document_id)

    resp = await client.delete(f"/api/documents/{document_id}", headers=AUTH_HEADERS)
    assert resp.status_code == 204
    assert await storage.exists(template["storage_path"])

    app.dependency_overrides[get_llm_client] = lambda: fake_llm.client(api_key="")
    resp = await client.post(
        f"/api/templates/{template['id']}/fill",
        json={"ocr_fields": [{"tag": "ownerName", "value": "Jan"}]},
        headers=AUTH_HEADERS,
    )
    assert resp.status_code == 200

    resp = await client.delete(f"/api/templates/{template['id']}", headers=AUTH_HEADERS)
    assert resp.status_code == 204
    assert not await storage.exists(template["storage_path"])
