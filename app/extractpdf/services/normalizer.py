"""
Response normalizer: raw model text to validated page records.

Accepted shapes are ``{"records": [...]}``, a bare array, or a bare object
(treated as a single record). Problems with one page's response stay
page-scoped and are reported through ``ParsedRecords.error``.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DISCARDED_ENTRY_WARNING = "Discarded a non-object entry returned by the model."
MISSING_PAGE_WARNING = "Added missing page number to a record returned by the model."
NO_RECORDS_ARRAY_ERROR = "LLM response did not include a records array."
NO_USABLE_RECORDS_ERROR = "The model response did not contain any usable records."


class ParsedRecords(BaseModel):
    """Normalized records of one page, or the reason there are none."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


def _has_numeric_page(record: dict[str, Any]) -> bool:
    page = record.get("page")
    return isinstance(page, (int, float)) and not isinstance(page, bool)


def parse_records_from_response(raw: str | None, page_number: int) -> ParsedRecords:
    """
    Parse and validate the model output for one page.

    Args:
        raw: Raw model text.
        page_number: Page the response belongs to; injected into records
            that do not carry a numeric ``page``.

    Returns:
        ParsedRecords; ``error`` is set when the JSON is malformed or no
        usable record remains.
    """
    try:
        root = json.loads(raw or "")
    except (TypeError, ValueError) as e:
        logger.debug("Page %d response is not valid JSON: %s", page_number, e)
        return ParsedRecords(error=f"Model response was not valid JSON: {e}")

    if isinstance(root, dict) and isinstance(root.get("records"), list):
        candidates = root["records"]
    elif isinstance(root, list):
        candidates = root
    elif isinstance(root, dict):
        candidates = [root]
    else:
        return ParsedRecords(error=NO_RECORDS_ARRAY_ERROR)

    records: list[dict[str, Any]] = []
    warnings: list[str] = []

    for item in candidates:
        if not isinstance(item, dict):
            warnings.append(DISCARDED_ENTRY_WARNING)
            continue

        record = dict(item)
        if not _has_numeric_page(record):
            record["page"] = page_number
            warnings.append(MISSING_PAGE_WARNING)
        records.append(record)

    if not records:
        return ParsedRecords(warnings=warnings, error=NO_USABLE_RECORDS_ERROR)

    return ParsedRecords(records=records, warnings=warnings)
