"""
Shared fixtures for templater tests.

The app runs against a throwaway SQLite database (aiosqlite) and a per-test
storage directory.  OpenRouter is replaced by a scripted httpx MockTransport,
so no test touches the network.
"""
from __future__ import annotations

import asyncio
import io
import json
import os
import tempfile
import zipfile
from typing import AsyncGenerator, Callable, List, Optional
from xml.sax.saxutils import escape

import httpx
import pytest
import pytest_asyncio
from docx import Document as DocxDocument
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

# Override settings *before* any app module is imported, so that
# settings and the global engine point at the test locations.
_TMP_DIR = tempfile.mkdtemp(prefix="templater-tests-")
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{_TMP_DIR}/templater_test.db",
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["STORAGE_DIR"] = os.path.join(_TMP_DIR, "storage")
os.environ["OPENROUTER_API_KEY"] = "test-key"

from app.database import Base, get_db, get_session_factory  # noqa: E402
from app.main import app  # noqa: E402
from app.services.job_manager import JobManager  # noqa: E402
from app.services.llm_client import OpenRouterClient, get_llm_client  # noqa: E402
from app.services.storage import LocalStorage, get_storage  # noqa: E402


# ---------------------------------------------------------------------------
# Scripted LLM
# ---------------------------------------------------------------------------

class FakeLLM:
    """
    Stands in for OpenRouter's chat-completions endpoint.

    Replies come from ``responder(payload)`` when set, otherwise from the
    ``replies`` queue; an exhausted queue answers with empty content.
    Setting ``gate`` holds every reply until the event is set.
    """

    def __init__(self) -> None:
        self.requests: List[dict] = []
        self.replies: List[str] = []
        self.responder: Optional[Callable[[dict], str]] = None
        self.status_code = 200
        self.gate: Optional[asyncio.Event] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"message": "scripted"}})
        if self.responder is not None:
            content = self.responder(payload)
        elif self.replies:
            content = self.replies.pop(0)
        else:
            content = ""
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    def client(self, api_key: str = "test-key") -> OpenRouterClient:
        return OpenRouterClient(api_key=api_key, transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_jobs():
    """Job state is class-level; never let it leak between tests."""
    JobManager._tasks.clear()
    JobManager._status.clear()
    yield
    JobManager._tasks.clear()
    JobManager._status.clear()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(str(tmp_path / "storage"))


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh schema per test; everything is dropped afterwards."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    storage: LocalStorage,
    fake_llm: FakeLLM,
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the DB, storage and LLM
    dependencies overridden.
    """

    async def _override_get_db():
        yield db_session

    llm = fake_llm.client()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_llm_client] = lambda: llm

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

AUTH_HEADERS = {
    "X-User-Id": "test-user-1",
    "X-User-Email": "test1@example.com",
    "X-User-Name": "Test User 1",
}

AUTH_HEADERS_USER2 = {
    "X-User-Id": "test-user-2",
    "X-User-Email": "test2@example.com",
    "X-User-Name": "Test User 2",
}

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
W14_NS = "http://schemas.microsoft.com/office/word/2010/wordml"


def run(text: str, bold: bool = False, size: Optional[int] = None) -> str:
    """One ``w:r`` with a single text node; *size* is in half-points."""
    props = ("<w:b/>" if bold else "") + (f'<w:sz w:val="{size}"/>' if size else "")
    rpr = f"<w:rPr>{props}</w:rPr>" if props else ""
    return f'<w:r>{rpr}<w:t xml:space="preserve">{escape(text)}</w:t></w:r>'


def para(*runs: str, para_id: Optional[str] = None) -> str:
    attr = f' w14:paraId="{para_id}"' if para_id else ""
    return f"<w:p{attr}>{''.join(runs)}</w:p>"


def table(*rows: List[str]) -> str:
    """Each row is a list of cell bodies (paragraph markup)."""
    body = "".join(
        "<w:tr>" + "".join(f"<w:tc>{cell}</w:tc>" for cell in row) + "</w:tr>"
        for row in rows
    )
    return f"<w:tbl>{body}</w:tbl>"


def document_xml(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}" xmlns:w14="{W14_NS}">'
        f"<w:body>{body}</w:body></w:document>"
    )


def make_docx(body: str) -> bytes:
    """A real python-docx package whose document.xml holds *body*."""
    base = io.BytesIO()
    DocxDocument().save(base)

    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(base.getvalue())) as src, zipfile.ZipFile(
        out, "w", zipfile.ZIP_DEFLATED
    ) as dst:
        for info in src.infolist():
            data = src.read(info.filename)
            if info.filename == "word/document.xml":
                data = document_xml(body).encode("utf-8")
            dst.writestr(info, data)
    return out.getvalue()


def read_xml(docx_bytes: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(docx_bytes)) as archive:
        return archive.read("word/document.xml").decode("utf-8")


def tagger_inputs(payload: dict) -> List[str]:
    """The texts a tagger request asked about, without inline context."""
    user_prompt = payload["messages"][1]["content"]
    annotated = json.loads(user_prompt.split("\n\n", 1)[1])
    return [text.split(" [")[0] for text in annotated]


def tagging_responder(values: dict) -> Callable[[dict], str]:
    """Tag every text found in *values*; leave the rest untouched."""

    def respond(payload: dict) -> str:
        return json.dumps([values.get(text, text) for text in tagger_inputs(payload)])

    return respond


def run_delta_responder(values: dict) -> Callable[[dict], str]:
    """Answer a batch with a change for every run whose text is in *values*."""

    def respond(payload: dict) -> str:
        paragraphs = json.loads(payload["messages"][1]["content"])
        changes = [
            {"id": r["id"], "new": values[r["text"]]}
            for p in paragraphs
            for r in p["runs"]
            if r["text"] in values
        ]
        return json.dumps({"changes": changes})

    return respond


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until *predicate* holds; fail the test after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
