# [Core: Response Validation]
"""
Response Validator — turns raw model text into typed records, or nothing.

The model is asked for bare JSON but commonly wraps it in a code fence or
leaks stray control bytes. Those two cosmetic deviations are repaired here;
anything else (syntax errors, wrong shape, out-of-range values, wrong
number of drafts/reviews) is rejected. The caller turns a rejection into a
run failure.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^```[\w+-]*[ \t]*\n?(.*?)\n?\s*```$", re.DOTALL)

# Control characters that may not appear raw inside JSON text.
# Tab, LF and CR are kept: they are legal formatting whitespace.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

_LOG_RAW_CHARS = 300


def strip_code_fence(text: str) -> str:
    """Return the inner text when the whole input is one fenced code block."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def remove_control_chars(text: str) -> str:
    return _CONTROL_CHARS_RE.sub("", text)


def clean_response_text(raw_text: str) -> str:
    return remove_control_chars(strip_code_fence(raw_text.strip()))


def validate(
    raw_text: str,
    shape: Type[T],
    expected_count: Optional[int] = None,
) -> Optional[T]:
    """
    Parse and validate a role's raw output.

    Args:
        raw_text: Text exactly as returned by the model
        shape: WriterOutput or ReviewerOutput
        expected_count: Required number of drafts / reviews, if known

    Returns:
        The validated record, or None. Never raises.
    """
    if not isinstance(raw_text, str):
        logger.warning(f"{shape.__name__}: expected text, got {type(raw_text).__name__}")
        return None

    cleaned = clean_response_text(raw_text)

    try:
        data = json.loads(cleaned)
    except (ValueError, RecursionError) as e:
        # RecursionError: arrays nested deeper than the interpreter stack
        logger.warning(
            f"{shape.__name__}: response is not valid JSON ({e}). "
            f"Raw: {raw_text[:_LOG_RAW_CHARS]}"
        )
        return None

    try:
        return shape.model_validate(data, context={"expected_count": expected_count})
    except ValidationError as e:
        logger.warning(
            f"{shape.__name__}: response does not match the expected structure: "
            f"{e.error_count()} error(s): {e.errors(include_url=False)}. "
            f"Raw: {raw_text[:_LOG_RAW_CHARS]}"
        )
        return None
    except RecursionError:
        logger.warning(f"{shape.__name__}: response is nested too deeply to validate")
        return None
