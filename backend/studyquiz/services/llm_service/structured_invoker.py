"""Structured LLM invocation: tagged-block extraction, validation and one retry.

The model answers in prose with exactly one ``<name>...</name>`` block
holding a JSON array. This module provides:
- ``extract_block`` / ``parse_and_validate``: never raise, return ``None``
- ``check_exfiltration``: system-marker containment check
- ``invoke_with_retry``: first attempt, then a single corrective retry that
  replays the failed assistant turn verbatim
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from studyquiz.core.errors import FailureCause, ModelUnavailableError, StructuredOutputError
from studyquiz.prompts.constants import CORRECTIVE_MESSAGE, SYSTEM_MARKER
from studyquiz.services.llm_service.llm import ModelInvoker

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_ATTEMPTS = 2
_SNIPPET_CHARS = 500


def _snippet(text: str) -> str:
    return text[:_SNIPPET_CHARS]


# ── Extraction & validation ───────────────────────────────────


def extract_block(text: str, block_name: str) -> Optional[str]:
    """Return the trimmed content between the first ``<block_name>`` tag and
    the first ``</block_name>`` after it, or ``None`` if either is missing."""
    open_tag = f"<{block_name}>"
    close_tag = f"</{block_name}>"

    start = text.find(open_tag)
    if start == -1:
        return None
    start += len(open_tag)

    end = text.find(close_tag, start)
    if end == -1:
        return None
    return text[start:end].strip()


def parse_and_validate(
    text: str,
    block_name: str,
    schema: Type[T],
    context: Optional[Dict[str, Any]] = None,
) -> Optional[T]:
    """Extract *block_name* from *text*, parse JSON and validate with *schema*.

    Returns ``None`` on a missing block, invalid JSON or a schema mismatch.
    The reason is logged, never raised.
    """
    block = extract_block(text, block_name)
    if block is None:
        logger.warning(
            "Structured block <%s> not found. Response: %s",
            block_name, _snippet(text),
            extra={"block_name": block_name, "response_snippet": _snippet(text)},
        )
        return None

    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        logger.warning(
            "Invalid JSON in <%s>: %s. Block: %s",
            block_name, exc, _snippet(block),
            extra={"block_name": block_name, "response_snippet": _snippet(block)},
        )
        return None

    try:
        return schema.model_validate(data, context=context)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_input=False)
        logger.warning(
            "Schema validation failed for <%s> (%s): %d error(s): %s",
            block_name, schema.__name__, len(errors), errors[:5],
            extra={"block_name": block_name, "validation_errors": errors},
        )
        return None


def check_exfiltration(text: str) -> bool:
    """True when the response echoes the system marker."""
    return SYSTEM_MARKER in text


# ── Structured invocation with retry ──────────────────────────


async def _call(
    invoker: ModelInvoker,
    system_prompt: str,
    history: List[Dict[str, str]],
    temperature: float,
    block_name: str,
    attempt: int,
) -> str:
    try:
        response = await invoker.invoke(system_prompt, history, temperature)
    except ModelUnavailableError as exc:
        logger.error(
            "Model unavailable for <%s> (attempt %d/%d): %s",
            block_name, attempt, MAX_ATTEMPTS, exc,
            extra={"block_name": block_name, "attempt": attempt},
        )
        raise StructuredOutputError(FailureCause.MODEL_UNAVAILABLE, block_name, str(exc)) from exc

    if check_exfiltration(response):
        logger.error(
            "System marker found in model output for <%s> (attempt %d/%d). Response: %s",
            block_name, attempt, MAX_ATTEMPTS, _snippet(response),
            extra={"block_name": block_name, "attempt": attempt, "response_snippet": _snippet(response)},
        )
        raise StructuredOutputError(FailureCause.EXFILTRATION_DETECTED, block_name)
    return response


async def invoke_with_retry(
    invoker: ModelInvoker,
    *,
    system_prompt: str,
    user_message: str,
    block_name: str,
    schema: Type[T],
    temperature: float,
    context: Optional[Dict[str, Any]] = None,
) -> T:
    """Invoke the model and validate ``<block_name>`` against *schema*.

    Pipeline:
    1. Send ``[user]``; a leaked system marker fails immediately
    2. Extract + validate; success returns
    3. Otherwise send ``[user, assistant (first reply verbatim), corrective user]``
    4. Recheck the marker and validate once more

    Raises:
        StructuredOutputError: cause is ``EXFILTRATION_DETECTED``,
            ``MODEL_UNAVAILABLE`` or ``VALIDATION_FAILURE``.
    """
    history: List[Dict[str, str]] = [{"role": "user", "content": user_message}]

    first = await _call(invoker, system_prompt, history, temperature, block_name, attempt=1)
    result = parse_and_validate(first, block_name, schema, context)
    if result is not None:
        logger.info("Structured output <%s> validated (attempt 1)", block_name)
        return result

    logger.info("Retry attempt 2/%d for structured output <%s>", MAX_ATTEMPTS, block_name)
    retry_history = history + [
        {"role": "assistant", "content": first},
        {"role": "user", "content": CORRECTIVE_MESSAGE},
    ]
    second = await _call(invoker, system_prompt, retry_history, temperature, block_name, attempt=2)
    result = parse_and_validate(second, block_name, schema, context)
    if result is not None:
        logger.info("Structured output <%s> validated (attempt 2)", block_name)
        return result

    logger.error(
        "Failed to produce valid <%s> after %d attempts. Raw response: %s",
        block_name, MAX_ATTEMPTS, _snippet(second),
        extra={"block_name": block_name, "attempt": 2, "response_snippet": _snippet(second)},
    )
    raise StructuredOutputError(FailureCause.VALIDATION_FAILURE, block_name)
