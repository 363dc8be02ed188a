"""
Processing runs: creation, execution and read views.

``RunExecutor`` performs one execution attempt of a run:

    load document -> token gate -> page prompts -> classify -> persist

and owns the run state machine::

    pending -> running -> succeeded | failed | completed_with_errors | cancelled

A retryable failure leaves the run ``running`` and propagates as a
retryable ``ProcessingRunError`` so the queue can schedule the next
attempt. Every other failure marks the run ``failed`` before propagating.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from ..config import Settings
from ..models import (
    ACTIVE_STATUSES,
    CreatedRun,
    EventLevel,
    RunDetail,
    RunListResponse,
    RunListUsage,
    RunStatus,
)
from .documents import DocumentLoader
from .exceptions import ProcessingRunError
from .instruction_sets import DEFAULT_INSTRUCTION_SET_ID, resolve_instruction_set
from .llm_client import LanguageModel
from .page_processing import (
    all_pages_failed_retryably,
    run_page_level_prompts,
    summarize_token_usage,
)
from .repositories import Repositories
from .token_limit import clamp_token_safety_limit, enforce_token_limit

logger = logging.getLogger(__name__)

MAX_EVENTS_IN_DETAIL = 200

ESCALATION_MESSAGE = "OpenRouter returned retryable errors for every page in this run."
FILE_REMOVED_MESSAGE = "File was removed before processing could complete."


class RunExecutor:
    """Executes processing runs for the queue."""

    def __init__(
        self,
        repos: Repositories,
        loader: DocumentLoader,
        llm: LanguageModel,
        settings: Settings,
    ):
        self.repos = repos
        self.loader = loader
        self.llm = llm
        self.settings = settings

    def log_event(
        self,
        run_id: str,
        level: EventLevel,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.repos.events.append(run_id, level, message, context)

    def fail_exhausted(self, run_id: str, attempts: int, reason: str) -> bool:
        """
        Give up on a run after its last retryable failure.

        Returns:
            True if the run was still active and is now ``failed``.
        """
        self.log_event(
            run_id,
            EventLevel.ERROR,
            "Max retry attempts reached",
            {"attempts": attempts, "reason": reason},
        )
        return self._mark_failed(run_id, f"Max retry attempts reached: {reason}")

    def _mark_failed(self, run_id: str, message: str, warnings: list[str] | None = None) -> bool:
        fields: dict[str, Any] = {"error": message, "completed_at": datetime.utcnow()}
        if warnings:
            fields["warnings"] = warnings
        return self.repos.runs.update_status_if_active(run_id, RunStatus.FAILED, **fields)

    async def execute(self, run_id: str, attempt: int = 1) -> None:
        """
        Run one execution attempt.

        Args:
            run_id: Run to execute.
            attempt: Scheduler attempt number (1-based), recorded in events.

        Raises:
            ProcessingRunError: ``retryable`` tells the queue whether to
                schedule another attempt.
        """
        run = self.repos.runs.get(run_id)
        if run is None:
            raise ProcessingRunError("Processing run was not found")

        if run.status not in ACTIVE_STATUSES:
            self.log_event(run_id, EventLevel.INFO, f"Skipping run because status is {run.status.value}.")
            return

        started = self.repos.runs.begin_attempt(run_id)
        if started is None:
            current = self.repos.runs.get(run_id)
            status = current.status.value if current else "missing"
            self.log_event(run_id, EventLevel.INFO, f"Skipping run because status is {status}.")
            return

        self.log_event(
            run_id,
            EventLevel.INFO,
            "Processing attempt started",
            {"attempt": attempt, "attempts": started.attempts},
        )

        load_warnings: list[str] = []
        try:
            project = self.repos.projects.get(run.project_id)
            if project is None:
                raise ProcessingRunError("Project was removed before processing could complete")

            file = self.repos.files.get(project.id, run.file_id)
            if file is None:
                raise ProcessingRunError("Project file was removed before processing could complete")

            load_result = await asyncio.to_thread(
                self.loader.load, file, run.file_type or project.file_type
            )
            load_warnings = list(load_result.warnings)
            if load_warnings:
                self.log_event(
                    run_id,
                    EventLevel.WARN,
                    "Document extraction produced warnings",
                    {"warnings": load_warnings},
                )

            limit = (
                clamp_token_safety_limit(project.token_safety_limit)
                if project.token_safety_limit
                else self.settings.default_token_safety_limit
            )
            estimate = enforce_token_limit(load_result.pages, limit)

            workflow = resolve_instruction_set(
                run.instruction_set, project.instruction_set, DEFAULT_INSTRUCTION_SET_ID
            )
            prompt_result = await run_page_level_prompts(
                load_result.pages,
                workflow,
                self.llm,
                custom_prompt=run.custom_prompt or project.custom_prompt,
                model=run.model or self.settings.openrouter_model,
                temperature=(
                    run.temperature
                    if run.temperature is not None
                    else self.settings.openrouter_temperature
                ),
            )

            if all_pages_failed_retryably(prompt_result.pages):
                raise ProcessingRunError(ESCALATION_MESSAGE, retryable=True)

            warnings = list(load_warnings)
            failures = [page for page in prompt_result.pages if page.failed]
            if failures:
                warnings.append(f"{len(failures)} page(s) failed during processing.")

            if not failures:
                status = RunStatus.SUCCEEDED
            elif len(failures) < len(prompt_result.pages):
                status = RunStatus.COMPLETED_WITH_ERRORS
            else:
                status = RunStatus.FAILED

            summary = summarize_token_usage(page.token_usage for page in prompt_result.pages)

            with self.repos.transaction() as session:
                persisted = self.repos.runs.update_status_if_active(
                    run_id,
                    status,
                    session=session,
                    error=failures[0].error if status == RunStatus.FAILED else None,
                    aggregated_output=prompt_result.combined,
                    usage_summary=summary.model_dump() if summary else None,
                    warnings=warnings or None,
                    completed_at=datetime.utcnow(),
                )
                if persisted:
                    self.repos.pages.replace_for_run(run_id, prompt_result.pages, session=session)

            if not persisted:
                self.log_event(
                    run_id,
                    EventLevel.INFO,
                    "Discarded results because the run is no longer active.",
                    {"attempt": attempt},
                )
                return

            self.log_event(
                run_id,
                EventLevel.WARN if failures else EventLevel.INFO,
                "Processing run completed",
                {
                    "status": status.value,
                    "warnings": warnings,
                    "estimated_tokens": estimate,
                    "summary": summary.model_dump() if summary else None,
                },
            )

        except ProcessingRunError as e:
            if e.retryable:
                self.log_event(run_id, EventLevel.WARN, e.message, {"attempt": attempt, "retryable": True})
            else:
                self._mark_failed(run_id, e.message, load_warnings)
                self.log_event(run_id, EventLevel.ERROR, e.message)
            raise

        except Exception as e:
            logger.exception("Unexpected error while executing run %s", run_id)
            message = str(e) or "Unexpected error while executing the processing run"
            self.log_event(run_id, EventLevel.ERROR, message, {"exception": type(e).__name__})
            self._mark_failed(run_id, message, load_warnings)
            raise ProcessingRunError(message) from e


class ProcessingService:
    """Run creation, cancellation and read views used by the HTTP layer."""

    def __init__(self, repos: Repositories, settings: Settings):
        self.repos = repos
        self.settings = settings

    def queue_processing_for_file(
        self,
        project_id: str,
        file_id: str,
        triggered_by: str | None = None,
    ) -> CreatedRun | None:
        """
        Create a ``pending`` run for a project file.

        The caller enqueues the returned run id.

        Returns:
            CreatedRun, or None if the project or file does not exist.
        """
        project = self.repos.projects.get(project_id)
        if project is None:
            return None

        file = self.repos.files.get(project.id, file_id)
        if file is None:
            return None

        run = self.repos.runs.create(
            project_id=project.id,
            file_id=file.id,
            instruction_set=project.instruction_set or DEFAULT_INSTRUCTION_SET_ID,
            custom_prompt=project.custom_prompt,
            model=self.settings.openrouter_model,
            temperature=self.settings.openrouter_temperature,
            file_type=project.file_type,
        )
        self.repos.events.append(
            run.id,
            EventLevel.INFO,
            "Processing run queued",
            {"file_name": file.original_name, "triggered_by": triggered_by or "system"},
        )
        return CreatedRun(run_id=run.id)

    def cancel_runs_for_file(self, file_id: str) -> list[str]:
        """
        Cancel every pending or running run of a file.

        In-flight attempts are not interrupted; they discard their results
        when they find the run cancelled.
        """
        cancelled: list[str] = []
        for run in self.repos.runs.list_active_for_file(file_id):
            updated = self.repos.runs.update_status_if_active(
                run.id,
                RunStatus.CANCELLED,
                error=FILE_REMOVED_MESSAGE,
                completed_at=datetime.utcnow(),
            )
            if not updated:
                continue
            self.repos.events.append(
                run.id,
                EventLevel.WARN,
                "Run cancelled because the associated file was deleted.",
            )
            cancelled.append(run.id)

        if cancelled:
            logger.info("Cancelled %d run(s) for file %s", len(cancelled), file_id)
        return cancelled

    def list_runs_for_project(self, project_id: str, limit: int = 20) -> RunListResponse:
        runs = self.repos.runs.list_summaries(project_id, limit=max(1, min(limit, 100)))

        usage = RunListUsage()
        for run in runs:
            if run.usage_summary is not None:
                if run.usage_summary.total_tokens is not None:
                    usage.total_tokens += run.usage_summary.total_tokens
                if run.usage_summary.total_cost_usd is not None:
                    usage.total_cost_usd += run.usage_summary.total_cost_usd
            if run.status in ACTIVE_STATUSES:
                usage.active += 1

        return RunListResponse(runs=runs, summary=usage)

    def get_run_detail(self, project_id: str, run_id: str) -> RunDetail | None:
        run = self.repos.runs.get_for_project(project_id, run_id)
        if run is None:
            return None

        return RunDetail(
            run=run,
            file=self.repos.files.get_by_id(run.file_id),
            pages=self.repos.pages.list_for_run(run.id),
            events=self.repos.events.list_for_run(run.id, limit=MAX_EVENTS_IN_DETAIL),
        )
