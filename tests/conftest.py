"""Pytest configuration and fixtures."""

import io
import json
import os
import re
from collections.abc import Generator
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("OPENROUTER_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.extractpdf.config import Settings
from app.extractpdf.database import build_engine, build_session_factory, init_db
from app.extractpdf.main import create_app
from app.extractpdf.models import (
    DocumentPage,
    FileType,
    PageImage,
    ProjectFileRecord,
    RunStatus,
    TokenUsageSummary,
)
from app.extractpdf.models_db import ProcessingRun, Project, ProjectFile
from app.extractpdf.services.documents import DocumentLoader, DocumentLoadResult
from app.extractpdf.services.llm_client import LlmCompletion
from app.extractpdf.services.processing_service import ProcessingService, RunExecutor
from app.extractpdf.services.repositories import Repositories

_PAGE_NUMBER = re.compile(r"Document page number: (\d+)\.")


# =============================================================================
# Test doubles
# =============================================================================


class FakeLanguageModel:
    """
    Scripted language model.

    ``script`` maps a page number to the completions returned on successive
    calls for that page; the last completion repeats once the list runs out.
    """

    def __init__(self, script: dict[int, list[LlmCompletion]] | None = None, default: LlmCompletion | None = None):
        self.script = {page: list(responses) for page, responses in (script or {}).items()}
        self.default = default
        self.calls: list[dict] = []

    async def complete(self, messages, *, model=None, temperature=None, json_mode=False) -> LlmCompletion:
        page_number = _page_number_of(messages)
        self.calls.append(
            {
                "page": page_number,
                "messages": messages,
                "model": model,
                "temperature": temperature,
                "json_mode": json_mode,
            }
        )
        responses = self.script.get(page_number)
        if not responses:
            if self.default is not None:
                return self.default
            return ok(json.dumps({"records": [{"page": page_number, "text": "hello"}]}))
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def calls_for_page(self, page_number: int) -> int:
        return sum(1 for call in self.calls if call["page"] == page_number)


def _page_number_of(messages) -> int | None:
    content = messages[-1]["content"]
    text = content if isinstance(content, str) else content[0]["text"]
    match = _PAGE_NUMBER.search(text)
    return int(match.group(1)) if match else None


def ok(output: str, total_tokens: int | None = None, cost: float | None = None) -> LlmCompletion:
    usage = None
    if total_tokens is not None or cost is not None:
        usage = TokenUsageSummary(
            prompt_tokens=total_tokens and total_tokens - 10,
            completion_tokens=10 if total_tokens else None,
            total_tokens=total_tokens,
            total_cost_usd=cost,
        )
    return LlmCompletion(success=True, output=output, usage=usage)


def http_error(status_code: int) -> LlmCompletion:
    return LlmCompletion(success=False, error=f"HTTP {status_code}", status_code=status_code)


class MemoryStorage:
    """In-memory file storage keyed by stored path."""

    def __init__(self, files: dict[str, bytes] | None = None):
        self.files = dict(files or {})

    def read_bytes(self, relative_path: str) -> bytes | None:
        return self.files.get(relative_path)


class StaticDocumentSource:
    """Document source returning fixed pages regardless of the bytes."""

    def __init__(self, pages: list[DocumentPage], warnings: list[str] | None = None):
        self.pages = pages
        self.warnings = warnings or []
        self.loads = 0

    def load(self, data: bytes, file: ProjectFileRecord) -> DocumentLoadResult:
        self.loads += 1
        return DocumentLoadResult(pages=list(self.pages), warnings=list(self.warnings))


def text_pages(count: int, text: str = "Page text") -> list[DocumentPage]:
    return [
        DocumentPage(page_number=number, text_content=f"{text} {number}")
        for number in range(1, count + 1)
    ]


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    db_engine = build_engine("sqlite://")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def repos(session_factory) -> Repositories:
    return Repositories(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        openrouter_api_key=None,
        processing_concurrency=2,
        processing_max_attempts=3,
        retry_base_delay_ms=500,
        retry_max_delay_ms=1000,
    )


@pytest.fixture
def make_project(session_factory):
    """Insert a project row and return its id."""

    def _make(
        file_type: FileType = FileType.PDF,
        instruction_set: str | None = "ocr_all_text",
        custom_prompt: str | None = None,
        token_safety_limit: int = 100_000,
    ) -> str:
        with session_factory() as db:
            project = Project(
                owner_id="owner-1",
                name="Test project",
                file_type=file_type,
                instruction_set=instruction_set,
                custom_prompt=custom_prompt,
                token_safety_limit=token_safety_limit,
            )
            db.add(project)
            db.commit()
            return project.id

    return _make


@pytest.fixture
def make_file(session_factory):
    """Insert a project file row and return its id."""

    def _make(
        project_id: str,
        original_name: str = "document.pdf",
        storage_path: str | None = None,
        content_type: str | None = "application/pdf",
        size: int = 1024,
    ) -> str:
        with session_factory() as db:
            file = ProjectFile(
                project_id=project_id,
                original_name=original_name,
                storage_path=storage_path or f"{project_id}/{original_name}",
                content_type=content_type,
                size=size,
            )
            db.add(file)
            db.commit()
            return file.id

    return _make


@pytest.fixture
def make_run(session_factory):
    """Insert a processing run row directly, with explicit status and output."""
    base_time = datetime(2024, 1, 1, 12, 0, 0)

    def _make(
        project_id: str,
        file_id: str,
        status: RunStatus = RunStatus.SUCCEEDED,
        aggregated_output=None,
        minutes: int = 0,
        usage_summary: dict | None = None,
    ) -> str:
        with session_factory() as db:
            run = ProcessingRun(
                project_id=project_id,
                file_id=file_id,
                instruction_set="ocr_all_text",
                file_type="pdf",
                status=status,
                aggregated_output=aggregated_output,
                usage_summary=usage_summary,
                created_at=base_time + timedelta(minutes=minutes),
            )
            db.add(run)
            db.commit()
            return run.id

    return _make


# =============================================================================
# Pipeline fixtures
# =============================================================================


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def llm() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def build_executor(repos, storage, settings):
    """Executor whose PDF source returns the given pages."""

    def _build(pages: list[DocumentPage], llm, warnings: list[str] | None = None) -> RunExecutor:
        source = StaticDocumentSource(pages, warnings)
        loader = DocumentLoader(storage, {FileType.PDF: source, FileType.IMAGE: source})
        return RunExecutor(repos, loader, llm, settings)

    return _build


@pytest.fixture
def service(repos, settings) -> ProcessingService:
    return ProcessingService(repos, settings)


@pytest.fixture
def queued_run(service, storage, make_project, make_file):
    """Create a pending run for a stored file; returns (project_id, file_id, run_id)."""

    def _make(original_name: str = "document.pdf", **project_kwargs):
        project_id = make_project(**project_kwargs)
        file_id = make_file(project_id, original_name=original_name)
        storage.files[f"{project_id}/{original_name}"] = b"%PDF-1.4 stored bytes"
        created = service.queue_processing_for_file(project_id, file_id, triggered_by="test")
        return project_id, file_id, created.run_id

    return _make


# =============================================================================
# HTTP fixtures
# =============================================================================


@pytest.fixture
def client(engine, session_factory, settings, llm, storage) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI application."""
    app = create_app(
        settings=settings,
        session_factory=session_factory,
        bind=engine,
        llm=llm,
        storage=storage,
    )
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# File content fixtures
# =============================================================================


@pytest.fixture
def png_bytes() -> bytes:
    """A small real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color="red").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def image_page_factory():
    def _make(page_number: int, size: int) -> DocumentPage:
        return DocumentPage(
            page_number=page_number,
            images=[PageImage(data=b"\x00" * size, mime_type="image/jpeg")],
        )

    return _make
