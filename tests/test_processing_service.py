"""Tests for run execution and the run views."""

import json

import pytest

from app.extractpdf.models import EventLevel, PageStatus, RunStatus
from app.extractpdf.services.exceptions import ProcessingRunError
from app.extractpdf.services.processing_queue import ProcessingQueue
from app.extractpdf.services.processing_service import ESCALATION_MESSAGE, FILE_REMOVED_MESSAGE

from conftest import FakeLanguageModel, http_error, ok, text_pages


def records(page: int, count: int) -> str:
    return json.dumps({"records": [{"page": page, "index": index} for index in range(count)]})


def event_messages(repos, run_id: str) -> list[str]:
    return [event.message for event in repos.events.list_for_run(run_id)]


class TestQueueing:
    """Tests for run creation."""

    def test_queue_creates_pending_run(self, service, repos, queued_run):
        project_id, file_id, run_id = queued_run()

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.PENDING
        assert run.attempts == 0
        assert run.file_id == file_id
        assert run.instruction_set == "ocr_all_text"
        assert event_messages(repos, run_id) == ["Processing run queued"]

    def test_unknown_file_returns_none(self, service, make_project):
        project_id = make_project()
        assert service.queue_processing_for_file(project_id, "missing") is None

    def test_unknown_project_returns_none(self, service):
        assert service.queue_processing_for_file("missing", "missing") is None

    def test_project_without_workflow_uses_default(self, repos, queued_run):
        _, _, run_id = queued_run(instruction_set=None)
        assert repos.runs.get(run_id).instruction_set == "ocr_all_text"


class TestExecution:
    """Tests for a single execution attempt."""

    @pytest.mark.asyncio
    async def test_all_pages_succeed(self, repos, build_executor, queued_run):
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(
            script={1: [ok(records(1, 2), total_tokens=100, cost=0.002)], 2: [ok(records(2, 1), total_tokens=40)]}
        )
        executor = build_executor(text_pages(2), llm)

        await executor.execute(run_id)

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert run.attempts == 1
        assert run.started_at is not None
        assert run.completed_at is not None
        assert [record["page"] for record in run.aggregated_output] == [1, 1, 2]
        assert run.usage_summary.total_tokens == 140
        assert run.usage_summary.total_cost_usd == 0.002
        assert run.warnings == []

        pages = repos.pages.list_for_run(run_id)
        assert [page.page_number for page in pages] == [1, 2]
        assert all(page.status == PageStatus.SUCCEEDED for page in pages)
        assert event_messages(repos, run_id)[-1] == "Processing run completed"

    @pytest.mark.asyncio
    async def test_partial_failure_completes_with_errors(self, repos, build_executor, queued_run):
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(script={1: [ok(records(1, 1))], 2: [ok("nope")], 3: [ok(records(3, 1))]})

        await build_executor(text_pages(3), llm).execute(run_id)

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert run.error is None
        assert len(run.aggregated_output) == 2
        assert "1 page(s) failed during processing." in run.warnings

        pages = repos.pages.list_for_run(run_id)
        assert pages[1].status == PageStatus.FAILED
        assert pages[1].raw_response == "nope"

    @pytest.mark.asyncio
    async def test_every_page_failing_without_retry_fails_the_run(self, repos, build_executor, queued_run):
        """Non-retryable page failures make a failed run carrying the first error."""
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(script={1: [http_error(400)], 2: [ok("[]")]})

        await build_executor(text_pages(2), llm).execute(run_id)

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "HTTP 400"
        assert run.aggregated_output == []
        assert len(repos.pages.list_for_run(run_id)) == 2

    @pytest.mark.asyncio
    async def test_all_retryable_failures_escalate(self, repos, build_executor, queued_run):
        """The run stays running and no page rows are written."""
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(default=http_error(429))

        with pytest.raises(ProcessingRunError) as exc_info:
            await build_executor(text_pages(2), llm).execute(run_id)

        assert exc_info.value.retryable is True
        assert exc_info.value.message == ESCALATION_MESSAGE
        run = repos.runs.get(run_id)
        assert run.status == RunStatus.RUNNING
        assert repos.pages.list_for_run(run_id) == []

    @pytest.mark.asyncio
    async def test_token_limit_blocks_model_calls(self, repos, build_executor, queued_run, image_page_factory):
        _, _, run_id = queued_run(token_safety_limit=1_000)
        llm = FakeLanguageModel()
        executor = build_executor([image_page_factory(1, 8_000)], llm)

        with pytest.raises(ProcessingRunError) as exc_info:
            await executor.execute(run_id)

        assert exc_info.value.retryable is False
        assert llm.calls == []
        run = repos.runs.get(run_id)
        assert run.status == RunStatus.FAILED
        assert "exceeds the project's safety limit" in run.error

    @pytest.mark.asyncio
    async def test_load_warnings_are_kept(self, repos, build_executor, queued_run):
        _, _, run_id = queued_run()
        executor = build_executor(text_pages(1), FakeLanguageModel(), warnings=["Page 1 text was truncated."])

        await executor.execute(run_id)

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert run.warnings == ["Page 1 text was truncated."]
        assert "Document extraction produced warnings" in event_messages(repos, run_id)

    @pytest.mark.asyncio
    async def test_missing_stored_file_fails_the_run(self, repos, storage, build_executor, queued_run):
        project_id, _, run_id = queued_run()
        storage.files.clear()
        llm = FakeLanguageModel()

        with pytest.raises(ProcessingRunError) as exc_info:
            await build_executor(text_pages(1), llm).execute(run_id)

        assert exc_info.value.retryable is False
        run = repos.runs.get(run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "Stored file is no longer available"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_finished_run_is_skipped(self, repos, build_executor, make_project, make_file, make_run):
        project_id = make_project()
        file_id = make_file(project_id)
        run_id = make_run(project_id, file_id, status=RunStatus.SUCCEEDED)
        llm = FakeLanguageModel()

        await build_executor(text_pages(1), llm).execute(run_id)

        assert llm.calls == []
        assert repos.runs.get(run_id).attempts == 0
        assert event_messages(repos, run_id) == ["Skipping run because status is succeeded."]

    @pytest.mark.asyncio
    async def test_missing_file_row_counts_the_attempt(
        self, repos, build_executor, make_project, make_file, make_run
    ):
        """The attempt is counted before the project file lookup fails it."""
        project_id = make_project()
        foreign_file = make_file(make_project())
        run_id = make_run(project_id, foreign_file, status=RunStatus.PENDING)
        llm = FakeLanguageModel()

        with pytest.raises(ProcessingRunError) as exc_info:
            await build_executor(text_pages(1), llm).execute(run_id)

        assert exc_info.value.retryable is False
        run = repos.runs.get(run_id)
        assert run.status == RunStatus.FAILED
        assert run.attempts == 1
        assert run.error == "Project file was removed before processing could complete"
        assert event_messages(repos, run_id)[:1] == ["Processing attempt started"]
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_unknown_run_is_not_retryable(self, build_executor):
        with pytest.raises(ProcessingRunError) as exc_info:
            await build_executor(text_pages(1), FakeLanguageModel()).execute("missing")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_custom_prompt_reaches_the_model(self, build_executor, queued_run):
        _, _, run_id = queued_run(custom_prompt="Prefer totals.")
        llm = FakeLanguageModel()

        await build_executor(text_pages(1), llm).execute(run_id)

        system_prompt = llm.calls[0]["messages"][0]["content"]
        assert system_prompt.endswith("Prefer totals.")


class TestCancellation:
    """Tests for cancelling runs of removed files."""

    def test_cancel_marks_active_runs(self, service, repos, queued_run, make_run):
        project_id, file_id, run_id = queued_run()
        finished_id = make_run(project_id, file_id, status=RunStatus.SUCCEEDED)

        cancelled = service.cancel_runs_for_file(file_id)

        assert cancelled == [run_id]
        run = repos.runs.get(run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.error == FILE_REMOVED_MESSAGE
        assert repos.runs.get(finished_id).status == RunStatus.SUCCEEDED
        assert event_messages(repos, run_id)[-1] == "Run cancelled because the associated file was deleted."

    @pytest.mark.asyncio
    async def test_results_of_cancelled_attempt_are_discarded(self, service, repos, build_executor, queued_run):
        """A run cancelled while its pages are prompted keeps its cancelled state."""
        _, file_id, run_id = queued_run()

        class CancellingModel(FakeLanguageModel):
            async def complete(self, messages, **kwargs):
                service.cancel_runs_for_file(file_id)
                return await super().complete(messages, **kwargs)

        await build_executor(text_pages(2), CancellingModel()).execute(run_id)

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.aggregated_output is None
        assert repos.pages.list_for_run(run_id) == []
        assert "Discarded results because the run is no longer active." in event_messages(repos, run_id)


class TestQueuedExecution:
    """Tests for runs driven through the processing queue."""

    @pytest.mark.asyncio
    async def test_retry_then_partial_success(self, repos, build_executor, queued_run):
        """
        Every page returns HTTP 500 on the first attempt; the second attempt
        yields 2 + 1 records and one page of invalid JSON.
        """
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(
            script={
                1: [http_error(500), ok(records(1, 2))],
                2: [http_error(500), ok(records(2, 1))],
                3: [http_error(500), ok("{invalid json")],
            }
        )
        executor = build_executor(text_pages(3), llm)
        queue = ProcessingQueue(executor, base_delay=0.01, max_delay=0.05)

        queue.enqueue(run_id)
        await queue.join()
        await queue.shutdown()

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert run.attempts == 2
        assert len(run.aggregated_output) == 3
        assert "1 page(s) failed during processing." in run.warnings

        events = repos.events.list_for_run(run_id)
        assert [event.sequence for event in events] == list(range(1, len(events) + 1))
        retry_events = [event for event in events if event.message.startswith("Retrying in")]
        assert len(retry_events) == 1
        assert retry_events[0].level == EventLevel.WARN
        assert retry_events[0].context["attempt"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_mark_run_failed(self, repos, build_executor, queued_run):
        _, _, run_id = queued_run()
        llm = FakeLanguageModel(default=http_error(503))
        queue = ProcessingQueue(build_executor(text_pages(1), llm), max_attempts=2, base_delay=0.01)

        queue.enqueue(run_id)
        await queue.join()
        await queue.shutdown()

        run = repos.runs.get(run_id)
        assert run.status == RunStatus.FAILED
        assert run.attempts == 2
        assert run.error == f"Max retry attempts reached: {ESCALATION_MESSAGE}"
        assert llm.calls_for_page(1) == 2
        assert "Max retry attempts reached" in event_messages(repos, run_id)


class TestRunViews:
    """Tests for listing and run detail."""

    @pytest.mark.asyncio
    async def test_run_detail_has_pages_and_events(self, service, build_executor, queued_run):
        project_id, file_id, run_id = queued_run("reports/q1.pdf")
        await build_executor(text_pages(2), FakeLanguageModel()).execute(run_id)

        detail = service.get_run_detail(project_id, run_id)

        assert detail.run.id == run_id
        assert detail.file.original_name == "reports/q1.pdf"
        assert [page.page_number for page in detail.pages] == [1, 2]
        assert detail.events[0].message == "Processing run queued"

    def test_run_detail_is_project_scoped(self, service, queued_run, make_project):
        _, _, run_id = queued_run()
        other_project = make_project()
        assert service.get_run_detail(other_project, run_id) is None

    def test_list_runs_newest_first_with_totals(self, service, make_project, make_file, make_run):
        project_id = make_project()
        file_id = make_file(project_id, original_name="a.pdf", size=2048)
        older = make_run(project_id, file_id, minutes=0, usage_summary={"total_tokens": 10, "total_cost_usd": 0.5})
        newer = make_run(project_id, file_id, minutes=5, usage_summary={"total_tokens": 5})
        active = make_run(project_id, file_id, status=RunStatus.RUNNING, minutes=10)

        listing = service.list_runs_for_project(project_id, limit=20)

        assert [run.id for run in listing.runs] == [active, newer, older]
        assert listing.runs[0].file_name == "a.pdf"
        assert listing.runs[0].file_size == 2048
        assert listing.summary.total_tokens == 15
        assert listing.summary.total_cost_usd == 0.5
        assert listing.summary.active == 1

    def test_list_runs_respects_limit(self, service, make_project, make_file, make_run):
        project_id = make_project()
        file_id = make_file(project_id)
        for minutes in range(5):
            make_run(project_id, file_id, minutes=minutes)

        assert len(service.list_runs_for_project(project_id, limit=2).runs) == 2
