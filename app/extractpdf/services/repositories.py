"""
Typed repositories over the processing tables.

Every method opens one short session from the session factory and returns
pydantic records, never ORM rows. Methods accept an optional ``session`` so
that several writes can share one transaction (see
``Repositories.transaction``).

JSON columns are decoded by ``JSONText``; values that did not decode (raw
strings) are coerced here into the typed record shapes.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from ..models import (
    ACTIVE_STATUSES,
    EventLevel,
    FileType,
    PagePromptResult,
    PageStatus,
    ProcessingEventRecord,
    ProcessingPageRecord,
    ProcessingRunRecord,
    ProjectFileRecord,
    ProjectRecord,
    RunStatus,
    RunSummary,
    TokenUsageSummary,
)
from ..models_db import (
    ProcessingEvent,
    ProcessingPage,
    ProcessingRun,
    Project,
    ProjectFile,
)

logger = logging.getLogger(__name__)

EVENT_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.WARN: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

_ACTIVE = [status for status in ACTIVE_STATUSES]


# =============================================================================
# Structured value coercion
# =============================================================================


def as_string_list(value: Any) -> list[str]:
    """Coerce a stored warnings value to a list of strings."""
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    if isinstance(value, str) and value:
        return [value]
    return []


def as_usage(value: Any) -> TokenUsageSummary | None:
    if isinstance(value, TokenUsageSummary):
        return value
    if isinstance(value, dict):
        try:
            return TokenUsageSummary.model_validate(value)
        except ValueError:
            logger.warning("Discarding malformed usage summary: %r", value)
    return None


def as_entries(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def run_to_record(row: ProcessingRun) -> ProcessingRunRecord:
    file_type = None
    if row.file_type:
        try:
            file_type = FileType(row.file_type)
        except ValueError:
            file_type = None

    return ProcessingRunRecord(
        id=row.id,
        project_id=row.project_id,
        file_id=row.file_id,
        instruction_set=row.instruction_set,
        custom_prompt=row.custom_prompt,
        model=row.model,
        temperature=row.temperature,
        file_type=file_type,
        status=row.status,
        error=row.error,
        warnings=as_string_list(row.warnings),
        aggregated_output=row.aggregated_output,
        usage_summary=as_usage(row.usage_summary),
        attempts=row.attempts or 0,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def page_to_record(row: ProcessingPage) -> ProcessingPageRecord:
    return ProcessingPageRecord(
        id=row.id,
        run_id=row.run_id,
        page_number=row.page_number,
        status=row.status,
        status_code=row.status_code,
        entries=as_entries(row.entries),
        raw_response=row.raw_response,
        warnings=as_string_list(row.warnings),
        error=row.error,
        usage=as_usage(row.usage),
        created_at=row.created_at,
    )


def event_to_record(row: ProcessingEvent) -> ProcessingEventRecord:
    context = row.context if isinstance(row.context, dict) else None
    if row.context is not None and context is None:
        context = {"value": row.context}
    return ProcessingEventRecord(
        id=row.id,
        run_id=row.run_id,
        sequence=row.sequence,
        level=row.level,
        message=row.message,
        context=context,
        created_at=row.created_at,
    )


# =============================================================================
# Repositories
# =============================================================================


class _Repository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    @contextmanager
    def _scope(self, session: Session | None = None) -> Iterator[Session]:
        """Use the caller's session as-is, or open one that commits on success."""
        if session is not None:
            yield session
            return

        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class ProjectRepository(_Repository):
    """Read access to projects."""

    def get(self, project_id: str, session: Session | None = None) -> ProjectRecord | None:
        with self._scope(session) as db:
            project = db.query(Project).filter(Project.id == project_id).first()
            return ProjectRecord.model_validate(project) if project else None


class FileRepository(_Repository):
    """Read access to uploaded project files."""

    def get(self, project_id: str, file_id: str, session: Session | None = None) -> ProjectFileRecord | None:
        with self._scope(session) as db:
            row = (
                db.query(ProjectFile)
                .filter(ProjectFile.project_id == project_id, ProjectFile.id == file_id)
                .first()
            )
            return ProjectFileRecord.model_validate(row) if row else None

    def get_by_id(self, file_id: str, session: Session | None = None) -> ProjectFileRecord | None:
        with self._scope(session) as db:
            row = db.query(ProjectFile).filter(ProjectFile.id == file_id).first()
            return ProjectFileRecord.model_validate(row) if row else None

    def list_for_project(self, project_id: str, session: Session | None = None) -> list[ProjectFileRecord]:
        with self._scope(session) as db:
            rows = (
                db.query(ProjectFile)
                .filter(ProjectFile.project_id == project_id)
                .order_by(ProjectFile.created_at.asc())
                .all()
            )
            return [ProjectFileRecord.model_validate(row) for row in rows]

    def count_for_project(self, project_id: str, session: Session | None = None) -> int:
        with self._scope(session) as db:
            return db.query(ProjectFile).filter(ProjectFile.project_id == project_id).count()


class RunRepository(_Repository):
    """
    Processing runs.

    Status writes made by the pipeline go through conditional updates that
    only match runs still in an active status, so a run cancelled while an
    attempt was in flight is never overwritten.
    """

    def create(
        self,
        project_id: str,
        file_id: str,
        instruction_set: str | None,
        custom_prompt: str | None,
        model: str | None,
        temperature: float | None,
        file_type: FileType | str | None,
        session: Session | None = None,
    ) -> ProcessingRunRecord:
        with self._scope(session) as db:
            run = ProcessingRun(
                project_id=project_id,
                file_id=file_id,
                instruction_set=instruction_set,
                custom_prompt=custom_prompt,
                model=model,
                temperature=temperature,
                file_type=FileType(file_type).value if file_type else None,
                status=RunStatus.PENDING,
                attempts=0,
            )
            db.add(run)
            db.flush()
            return run_to_record(run)

    def get(self, run_id: str, session: Session | None = None) -> ProcessingRunRecord | None:
        with self._scope(session) as db:
            run = db.query(ProcessingRun).filter(ProcessingRun.id == run_id).first()
            return run_to_record(run) if run else None

    def get_for_project(
        self, project_id: str, run_id: str, session: Session | None = None
    ) -> ProcessingRunRecord | None:
        with self._scope(session) as db:
            run = (
                db.query(ProcessingRun)
                .filter(ProcessingRun.project_id == project_id, ProcessingRun.id == run_id)
                .first()
            )
            return run_to_record(run) if run else None

    def begin_attempt(self, run_id: str, session: Session | None = None) -> ProcessingRunRecord | None:
        """
        Mark an active run ``running`` and count one more attempt.

        ``started_at`` is stamped on the first attempt only. Returns the
        updated run, or None when the run is no longer active.
        """
        now = datetime.utcnow()
        with self._scope(session) as db:
            updated = (
                db.query(ProcessingRun)
                .filter(ProcessingRun.id == run_id, ProcessingRun.status.in_(_ACTIVE))
                .update(
                    {
                        ProcessingRun.status: RunStatus.RUNNING,
                        ProcessingRun.attempts: ProcessingRun.attempts + 1,
                        ProcessingRun.started_at: func.coalesce(ProcessingRun.started_at, now),
                        ProcessingRun.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                return None
            run = db.query(ProcessingRun).filter(ProcessingRun.id == run_id).first()
            return run_to_record(run)

    def update_status_if_active(
        self,
        run_id: str,
        status: RunStatus,
        session: Session | None = None,
        **fields: Any,
    ) -> bool:
        """
        Set ``status`` (and ``fields``) only while the run is pending/running.

        Returns:
            True if the run was updated, False if it had already left the
            active states (cancelled, finished) or does not exist.
        """
        values: dict[Any, Any] = {
            ProcessingRun.status: status,
            ProcessingRun.updated_at: datetime.utcnow(),
        }
        for name, value in fields.items():
            values[getattr(ProcessingRun, name)] = value

        with self._scope(session) as db:
            updated = (
                db.query(ProcessingRun)
                .filter(ProcessingRun.id == run_id, ProcessingRun.status.in_(_ACTIVE))
                .update(values, synchronize_session=False)
            )
            return bool(updated)

    def list_active_for_file(self, file_id: str, session: Session | None = None) -> list[ProcessingRunRecord]:
        with self._scope(session) as db:
            rows = (
                db.query(ProcessingRun)
                .filter(ProcessingRun.file_id == file_id, ProcessingRun.status.in_(_ACTIVE))
                .order_by(ProcessingRun.created_at.asc())
                .all()
            )
            return [run_to_record(row) for row in rows]

    def list_for_project(self, project_id: str, session: Session | None = None) -> list[ProcessingRunRecord]:
        """All runs of a project, newest first."""
        with self._scope(session) as db:
            rows = (
                db.query(ProcessingRun)
                .filter(ProcessingRun.project_id == project_id)
                .order_by(ProcessingRun.created_at.desc())
                .all()
            )
            return [run_to_record(row) for row in rows]

    def list_summaries(self, project_id: str, limit: int = 20, session: Session | None = None) -> list[RunSummary]:
        """Newest runs of a project joined with their file name and size."""
        with self._scope(session) as db:
            rows = (
                db.query(ProcessingRun, ProjectFile.original_name, ProjectFile.size)
                .outerjoin(ProjectFile, ProjectFile.id == ProcessingRun.file_id)
                .filter(ProcessingRun.project_id == project_id)
                .order_by(ProcessingRun.created_at.desc())
                .limit(limit)
                .all()
            )
            summaries = []
            for run, file_name, file_size in rows:
                record = run_to_record(run)
                summaries.append(
                    RunSummary(
                        id=record.id,
                        file_id=record.file_id,
                        status=record.status,
                        attempts=record.attempts,
                        created_at=record.created_at,
                        started_at=record.started_at,
                        completed_at=record.completed_at,
                        error=record.error,
                        warnings=record.warnings,
                        usage_summary=record.usage_summary,
                        file_name=file_name,
                        file_size=file_size,
                    )
                )
            return summaries


class PageRepository(_Repository):
    """Per-page results; replaced wholesale on every attempt."""

    def replace_for_run(
        self,
        run_id: str,
        results: list[PagePromptResult],
        session: Session | None = None,
    ) -> None:
        with self._scope(session) as db:
            db.query(ProcessingPage).filter(ProcessingPage.run_id == run_id).delete(
                synchronize_session=False
            )
            db.flush()
            for result in results:
                db.add(
                    ProcessingPage(
                        run_id=run_id,
                        page_number=result.page_number,
                        status=PageStatus.FAILED if result.failed else PageStatus.SUCCEEDED,
                        status_code=result.status_code,
                        entries=result.entries or None,
                        raw_response=result.raw_response,
                        warnings=result.warnings or None,
                        error=result.error,
                        usage=result.token_usage.model_dump() if result.token_usage else None,
                    )
                )

    def list_for_run(self, run_id: str, session: Session | None = None) -> list[ProcessingPageRecord]:
        with self._scope(session) as db:
            rows = (
                db.query(ProcessingPage)
                .filter(ProcessingPage.run_id == run_id)
                .order_by(ProcessingPage.page_number.asc())
                .all()
            )
            return [page_to_record(row) for row in rows]


class EventRepository(_Repository):
    """Append-only run event log, mirrored to the module logger."""

    def append(
        self,
        run_id: str,
        level: EventLevel,
        message: str,
        context: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> ProcessingEventRecord:
        logger.log(EVENT_LOG_LEVELS.get(level, logging.INFO), "Run %s: %s", run_id, message)

        with self._scope(session) as db:
            last = (
                db.query(func.max(ProcessingEvent.sequence))
                .filter(ProcessingEvent.run_id == run_id)
                .scalar()
            )
            event = ProcessingEvent(
                run_id=run_id,
                sequence=(last or 0) + 1,
                level=level,
                message=message,
                context=context,
            )
            db.add(event)
            db.flush()
            return event_to_record(event)

    def list_for_run(
        self, run_id: str, limit: int = 200, session: Session | None = None
    ) -> list[ProcessingEventRecord]:
        with self._scope(session) as db:
            rows = (
                db.query(ProcessingEvent)
                .filter(ProcessingEvent.run_id == run_id)
                .order_by(ProcessingEvent.sequence.asc(), ProcessingEvent.created_at.asc())
                .limit(limit)
                .all()
            )
            return [event_to_record(row) for row in rows]


class Repositories:
    """All repositories bound to one session factory."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory
        self.projects = ProjectRepository(session_factory)
        self.files = FileRepository(session_factory)
        self.runs = RunRepository(session_factory)
        self.pages = PageRepository(session_factory)
        self.events = EventRepository(session_factory)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One session shared by several repository calls, committed together."""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
