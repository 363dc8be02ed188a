"""
Pydantic models for the document-processing pipeline.

Defines strict types for runs, pages, events and the derived views
(progress snapshot, aggregated folder tree) returned by the API, plus the
transient values that flow between pipeline stages.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    """Lifecycle status of a processing run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
TERMINAL_STATUSES = frozenset(
    {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.COMPLETED_WITH_ERRORS,
        RunStatus.CANCELLED,
    }
)


class PageStatus(str, Enum):
    """Outcome of a single page prompt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventLevel(str, Enum):
    """Severity of a processing event."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FileType(str, Enum):
    """Document families a project accepts."""

    PDF = "pdf"
    IMAGE = "image"


# =============================================================================
# Workflow Registry Models
# =============================================================================


class InstructionField(BaseModel):
    """One output field the model must fill for every record."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class InstructionSet(BaseModel):
    """
    A named extraction workflow.

    Attributes:
        id: Stable identifier stored on projects and runs.
        name: Human-readable workflow name embedded in prompts.
        summary: One-sentence goal of the workflow.
        steps: High-level steps the model should follow.
        outputs: Human-readable description of the produced artifacts.
        fields: Output field schema for every record.
    """

    id: str
    name: str
    summary: str
    steps: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    fields: list[InstructionField] = Field(default_factory=list)


# =============================================================================
# Pipeline Values (transient)
# =============================================================================


class PageImage(BaseModel):
    """Binary image payload attached to a document page."""

    data: bytes
    mime_type: str = "image/png"


class DocumentPage(BaseModel):
    """One independently prompted unit of a document."""

    page_number: int = Field(..., ge=1)
    text_content: str | None = None
    images: list[PageImage] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TokenUsageSummary(BaseModel):
    """Token and cost counters reported by the provider."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    total_cost_usd: float | None = None


class PagePromptResult(BaseModel):
    """Result of prompting the model for one page."""

    page_number: int
    entries: list[dict[str, Any]] = Field(default_factory=list)
    raw_response: str | None = None
    error: str | None = None
    status_code: int | None = None
    warnings: list[str] = Field(default_factory=list)
    token_usage: TokenUsageSummary | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class PageProcessingResult(BaseModel):
    """All page results of a run plus the records of successful pages in order."""

    combined: list[dict[str, Any]] = Field(default_factory=list)
    pages: list[PagePromptResult] = Field(default_factory=list)


# =============================================================================
# Persisted Records
# =============================================================================


class ProjectRecord(BaseModel):
    """Project settings the pipeline reads."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str | None = None
    name: str = ""
    file_type: FileType = FileType.PDF
    instruction_set: str | None = None
    custom_prompt: str | None = None
    token_safety_limit: int | None = None


class ProjectFileRecord(BaseModel):
    """An uploaded file belonging to a project."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    original_name: str
    storage_path: str
    content_type: str | None = None
    size: int = 0
    created_at: datetime | None = None


class ProcessingRunRecord(BaseModel):
    """A tracked attempt-set to extract structured data from one file."""

    id: str
    project_id: str
    file_id: str
    instruction_set: str | None = None
    custom_prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    file_type: FileType | None = None
    status: RunStatus = RunStatus.PENDING
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    aggregated_output: Any = None
    usage_summary: TokenUsageSummary | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ProcessingPageRecord(BaseModel):
    """Persisted outcome of one page of one run attempt."""

    id: str
    run_id: str
    page_number: int
    status: PageStatus
    status_code: int | None = None
    entries: list[dict[str, Any]] = Field(default_factory=list)
    raw_response: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    usage: TokenUsageSummary | None = None
    created_at: datetime | None = None


class ProcessingEventRecord(BaseModel):
    """Append-only audit log entry for a run."""

    id: str
    run_id: str
    sequence: int = 0
    level: EventLevel
    message: str
    context: dict[str, Any] | None = None
    created_at: datetime | None = None


# =============================================================================
# API Response Models
# =============================================================================


class CreatedRun(BaseModel):
    """Identifier of a freshly queued run."""

    run_id: str


class RunSummary(BaseModel):
    """Row of the project run listing."""

    id: str
    file_id: str
    status: RunStatus
    attempts: int
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    usage_summary: TokenUsageSummary | None = None
    file_name: str | None = None
    file_size: int | None = None


class RunListUsage(BaseModel):
    """Totals over the listed runs."""

    total_tokens: int = 0
    total_cost_usd: float = 0.0
    active: int = 0


class RunListResponse(BaseModel):
    """Response model for the project run listing."""

    runs: list[RunSummary] = Field(default_factory=list)
    summary: RunListUsage = Field(default_factory=RunListUsage)


class RunDetail(BaseModel):
    """Run metadata with its ordered pages and ordered event log."""

    run: ProcessingRunRecord
    file: ProjectFileRecord | None = None
    pages: list[ProcessingPageRecord] = Field(default_factory=list)
    events: list[ProcessingEventRecord] = Field(default_factory=list)


class ProgressSnapshot(BaseModel):
    """Completion counters for a project."""

    total_files: int = Field(default=0, ge=0)
    completed_files: int = Field(default=0, ge=0)
    active_files: int = Field(default=0, ge=0)


class AggregatedFolderNode(BaseModel):
    """
    Node of the folder-shaped view over the latest run of every file.

    Folder nodes carry ``children``; file nodes carry ``run_id``,
    ``status`` and ``records``.
    """

    name: str
    path: str
    type: str = Field(..., pattern="^(folder|file)$")
    record_count: int = Field(default=0, ge=0)
    run_id: str | None = None
    status: RunStatus | None = None
    records: Any = None
    children: list["AggregatedFolderNode"] | None = None


class AggregateResponse(BaseModel):
    """Response model for the aggregate endpoint."""

    nodes: list[AggregatedFolderNode] = Field(default_factory=list)


class CancelResponse(BaseModel):
    """Runs cancelled for a removed file."""

    cancelled_run_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(default="healthy")
    version: str = Field(default="1.0.0")
    message: str | None = None
