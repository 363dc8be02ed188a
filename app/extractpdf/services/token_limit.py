"""
Token safety gate.

Estimates the model-token cost of a run before any model call and rejects
runs whose estimate is above the project's safety limit.
"""

import logging
import math
import re
from collections.abc import Iterable
from typing import Any

from ..config import (
    DEFAULT_TOKEN_SAFETY_LIMIT,
    MAX_TOKEN_SAFETY_LIMIT,
    MIN_TOKEN_SAFETY_LIMIT,
)
from ..models import DocumentPage
from .exceptions import TokenLimitExceededError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
BYTES_PER_IMAGE_TOKEN = 4

_WHITESPACE = re.compile(r"\s+")


def approximate_text_tokens(text: str | None) -> int:
    """Approximate tokens as ceil(characters / 4) after collapsing whitespace."""
    if not text:
        return 0
    normalized = _WHITESPACE.sub(" ", text).strip()
    if not normalized:
        return 0
    return math.ceil(len(normalized) / CHARS_PER_TOKEN)


def approximate_image_tokens(data: bytes | None) -> int:
    """Approximate tokens of an image payload as ceil(bytes / 4)."""
    if not data:
        return 0
    return math.ceil(len(data) / BYTES_PER_IMAGE_TOKEN)


def estimate_run_tokens(pages: Iterable[DocumentPage]) -> int:
    """Sum text and image token estimates over every page of a run."""
    total = 0
    for page in pages:
        total += approximate_text_tokens(page.text_content)
        for image in page.images:
            total += approximate_image_tokens(image.data)
    return total


def clamp_token_safety_limit(value: int | float) -> int:
    """Clamp a limit into [MIN_TOKEN_SAFETY_LIMIT, MAX_TOKEN_SAFETY_LIMIT]."""
    return int(min(max(int(value), MIN_TOKEN_SAFETY_LIMIT), MAX_TOKEN_SAFETY_LIMIT))


def parse_token_safety_limit(value: Any, default: int = DEFAULT_TOKEN_SAFETY_LIMIT) -> int:
    """
    Parse a user-supplied limit.

    Numbers and numeric strings are clamped; anything else (None, empty,
    non-numeric, non-finite) yields ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return default
        try:
            value = float(value)
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return clamp_token_safety_limit(value)


def enforce_token_limit(pages: list[DocumentPage], limit: int) -> int:
    """
    Reject a run whose estimated token usage is above ``limit``.

    Returns:
        The estimate, when it fits.

    Raises:
        TokenLimitExceededError: Non-retryable, raised before any model call.
    """
    estimate = estimate_run_tokens(pages)
    if estimate > limit:
        logger.warning("Token estimate %d exceeds safety limit %d", estimate, limit)
        raise TokenLimitExceededError(
            f"Estimated token usage ({estimate:,}) exceeds the project's safety limit "
            f"({limit:,}). Reduce the document size or raise the limit.",
            estimate=estimate,
            limit=limit,
        )
    return estimate
