"""
Page prompt executor.

Builds one chat request per document page and runs the pages strictly in
order. Each response goes through the normalizer; a failing page never
aborts the pages after it.
"""

import base64
import json
import logging
from collections.abc import Iterable
from typing import Any

from ..models import (
    DocumentPage,
    InstructionField,
    InstructionSet,
    PageProcessingResult,
    PagePromptResult,
    TokenUsageSummary,
)
from .llm_client import LanguageModel
from .normalizer import parse_records_from_response

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})

NO_TEXT_PLACEHOLDER = "No text content was provided for this page."


def is_retryable_status(status_code: int | None) -> bool:
    return status_code is not None and status_code in RETRYABLE_HTTP_STATUSES


def all_pages_failed_retryably(pages: list[PagePromptResult]) -> bool:
    """True when there is at least one page and every page failed with a retryable status."""
    return bool(pages) and all(
        page.failed and is_retryable_status(page.status_code) for page in pages
    )


def describe_fields_for_prompt(fields: list[InstructionField]) -> str:
    if not fields:
        return "No structured fields were provided."
    bullet_points = "\n".join(f'- "{field.name}": {field.description}' for field in fields)
    return f"Each record must include the following fields:\n{bullet_points}"


# =============================================================================
# Prompt Construction
# =============================================================================


def build_system_prompt(workflow: InstructionSet, custom_prompt: str | None = None) -> str:
    """Workflow instructions shared by every page of a run."""
    instructions = [
        f'You are assisting with the "{workflow.name}" workflow for extractPDF.',
        workflow.summary,
        "Analyze the provided page independently and produce structured JSON records.",
        'Return your response as a JSON object with a top-level "records" array.',
        describe_fields_for_prompt(workflow.fields),
        'Ensure every record includes a numeric "page" field representing the page number you analyzed.',
        "If a field is not applicable, set it to null rather than omitting it.",
        "Do not include explanatory text outside of the JSON object.",
    ]

    if workflow.steps:
        instructions.append("Follow these high-level steps:")
        instructions.append(
            "\n".join(f"{index}. {step}" for index, step in enumerate(workflow.steps, start=1))
        )

    if custom_prompt and custom_prompt.strip():
        instructions.append("Additional project-specific guidance:")
        instructions.append(custom_prompt.strip())

    return "\n\n".join(instructions)


def build_page_text(page: DocumentPage) -> str:
    """User-side text for one page: page number, text content and metadata."""
    text_content = page.text_content if page.text_content and page.text_content.strip() else NO_TEXT_PLACEHOLDER

    parts = [
        f"Document page number: {page.page_number}.",
        "Extracted text content:",
        '"""',
        text_content,
        '"""',
    ]

    if page.metadata:
        parts.append("Additional metadata:")
        parts.append(json.dumps(page.metadata, indent=2, ensure_ascii=False, default=str))

    return "\n".join(parts)


def build_page_messages(
    page: DocumentPage,
    workflow: InstructionSet,
    custom_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """
    Build the chat messages for one page.

    Page images are attached as base64 data URLs after the text part, in
    the OpenAI vision message format.
    """
    user_text = build_page_text(page)

    if page.images:
        content: Any = [{"type": "text", "text": user_text}]
        for image in page.images:
            encoded = base64.b64encode(image.data).decode("utf-8")
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.mime_type};base64,{encoded}"},
                }
            )
    else:
        content = user_text

    return [
        {"role": "system", "content": build_system_prompt(workflow, custom_prompt)},
        {"role": "user", "content": content},
    ]


# =============================================================================
# Execution
# =============================================================================


async def run_page_level_prompts(
    pages: list[DocumentPage],
    workflow: InstructionSet,
    llm: LanguageModel,
    custom_prompt: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
) -> PageProcessingResult:
    """
    Prompt the model once per page, sequentially.

    Returns:
        PageProcessingResult with one PagePromptResult per page and the
        records of successful pages concatenated in page order.
    """
    result = PageProcessingResult()

    for page in pages:
        messages = build_page_messages(page, workflow, custom_prompt)
        completion = await llm.complete(
            messages,
            model=model,
            temperature=temperature,
            json_mode=True,
        )

        if not completion.success:
            logger.warning(
                "Page %d request failed (status=%s): %s",
                page.page_number,
                completion.status_code,
                completion.error,
            )
            result.pages.append(
                PagePromptResult(
                    page_number=page.page_number,
                    error=completion.error or "Model request failed",
                    status_code=completion.status_code,
                    token_usage=completion.usage,
                )
            )
            continue

        parsed = parse_records_from_response(completion.output, page.page_number)
        if parsed.error:
            logger.warning("Page %d response rejected: %s", page.page_number, parsed.error)
            result.pages.append(
                PagePromptResult(
                    page_number=page.page_number,
                    raw_response=completion.output,
                    error=parsed.error,
                    warnings=parsed.warnings,
                    token_usage=completion.usage,
                )
            )
            continue

        result.combined.extend(parsed.records)
        result.pages.append(
            PagePromptResult(
                page_number=page.page_number,
                entries=parsed.records,
                raw_response=completion.output,
                warnings=parsed.warnings,
                token_usage=completion.usage,
            )
        )

    return result


def summarize_token_usage(usages: Iterable[TokenUsageSummary | None]) -> TokenUsageSummary | None:
    """
    Sum usage counters.

    A counter stays None unless at least one input reports it. Returns None
    when no input carries any usage.
    """
    totals: dict[str, int | float | None] = {
        "prompt_tokens": None,
        "completion_tokens": None,
        "total_tokens": None,
        "total_cost_usd": None,
    }
    seen = False
    for usage in usages:
        if usage is None:
            continue
        seen = True
        for key in totals:
            value = getattr(usage, key)
            if value is not None:
                totals[key] = (totals[key] or 0) + value

    if not seen:
        return None
    return TokenUsageSummary(**totals)
