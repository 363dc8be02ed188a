"""
SQLAlchemy database models for the document-processing pipeline.

Projects and project files are owned by the upload/CRUD side of the product
and are only read here. Processing runs, their pages and their events are
owned by the pipeline.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .config import DEFAULT_TOKEN_SAFETY_LIMIT
from .database import Base
from .models import EventLevel, FileType, PageStatus, RunStatus

logger = logging.getLogger(__name__)


def generate_id() -> str:
    """Return a new opaque identifier."""
    return uuid.uuid4().hex


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class JSONText(TypeDecorator):
    """
    JSON value stored as text.

    Values are serialized on write. On read, text that does not parse as
    JSON is returned as the raw string instead of raising, so one corrupt
    row never breaks a listing.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> str | None:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False, default=str)

    def process_result_value(self, value: str | None, dialect) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            logger.warning("Stored JSON column could not be parsed; returning raw text")
            return value


class Project(Base):
    """Project settings consumed by the pipeline."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    file_type: Mapped[FileType] = mapped_column(
        Enum(FileType, values_callable=_enum_values, native_enum=False, length=16),
        default=FileType.PDF,
        nullable=False,
    )
    instruction_set: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_safety_limit: Mapped[int] = mapped_column(
        Integer,
        default=DEFAULT_TOKEN_SAFETY_LIMIT,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    files: Mapped[list["ProjectFile"]] = relationship(
        "ProjectFile",
        back_populates="project",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name='{self.name}', file_type={self.file_type.value})>"


class ProjectFile(Base):
    """An uploaded file; ``original_name`` may carry folder segments."""

    __tablename__ = "project_files"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    project: Mapped[Project] = relationship("Project", back_populates="files")
    runs: Mapped[list["ProcessingRun"]] = relationship(
        "ProcessingRun",
        back_populates="file",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ProjectFile(id={self.id}, original_name='{self.original_name}')>"


class ProcessingRun(Base):
    """
    One tracked attempt-set to extract data from a single file.

    Created in ``pending`` by the upload side and mutated only by the
    scheduler and the run executor.
    """

    __tablename__ = "processing_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    project_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("project_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    instruction_set: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, values_callable=_enum_values, native_enum=False, length=32),
        default=RunStatus.PENDING,
        nullable=False,
        index=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[Any] = mapped_column(JSONText, nullable=True)
    aggregated_output: Mapped[Any] = mapped_column(JSONText, nullable=True)
    usage_summary: Mapped[Any] = mapped_column(JSONText, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    file: Mapped[ProjectFile] = relationship("ProjectFile", back_populates="runs")
    pages: Mapped[list["ProcessingPage"]] = relationship(
        "ProcessingPage",
        back_populates="run",
        cascade="all, delete-orphan",
    )
    events: Mapped[list["ProcessingEvent"]] = relationship(
        "ProcessingEvent",
        back_populates="run",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<ProcessingRun(id={self.id}, status={self.status.value}, attempts={self.attempts})>"


class ProcessingPage(Base):
    """Page-level result of the latest execution attempt of a run."""

    __tablename__ = "processing_pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    run_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("processing_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PageStatus] = mapped_column(
        Enum(PageStatus, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
    )
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entries: Mapped[Any] = mapped_column(JSONText, nullable=True)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[Any] = mapped_column(JSONText, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    usage: Mapped[Any] = mapped_column(JSONText, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    run: Mapped[ProcessingRun] = relationship("ProcessingRun", back_populates="pages")

    __table_args__ = (
        UniqueConstraint("run_id", "page_number", name="uq_processing_page_run_page"),
    )

    def __repr__(self) -> str:
        return f"<ProcessingPage(run_id={self.run_id}, page={self.page_number}, status={self.status.value})>"


class ProcessingEvent(Base):
    """Append-only audit entry for a run."""

    __tablename__ = "processing_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    run_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("processing_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Position within the run's event log",
    )
    level: Mapped[EventLevel] = mapped_column(
        Enum(EventLevel, values_callable=_enum_values, native_enum=False, length=16),
        default=EventLevel.INFO,
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Any] = mapped_column(JSONText, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    run: Mapped[ProcessingRun] = relationship("ProcessingRun", back_populates="events")

    def __repr__(self) -> str:
        return f"<ProcessingEvent(run_id={self.run_id}, level={self.level.value})>"
