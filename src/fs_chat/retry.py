"""Decide whether a failed step should be retried or reported as terminal."""
from __future__ import annotations

import logging
import re

from .models import MessageState, MessageStatus

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

# Substrings (lower-case) that mark backend overload or throttling.
TRANSIENT_MARKERS = (
    "overloaded",
    "rate_limit",
    "rate limit",
    "too many requests",
)

# 429/529 count only as a status code, never as part of an id.
_STATUS_RE = re.compile(r"\b(?:http|status|code)\s*[:=]?\s*(?:429|529)\b")


def is_transient(error_text: str) -> bool:
    lowered = (error_text or "").lower()
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return True
    return _STATUS_RE.search(lowered) is not None


def classify(state: MessageState, error_text: str) -> MessageState:
    """Return ``state`` moved to Pending (retry later) or Failed.

    Only transient failures with fewer than MAX_RETRIES prior attempts go
    back to Pending; re-submission is left to the caller.
    """
    if is_transient(error_text) and state.retries < MAX_RETRIES:
        logger.info(
            "transient failure on message %s (retry %d/%d): %s",
            state.message.id, state.retries + 1, MAX_RETRIES, error_text,
        )
        return state.advance(
            MessageStatus.PENDING,
            retries=state.retries + 1,
            last_error=error_text,
        )
    logger.warning("message %s failed: %s", state.message.id, error_text)
    return state.advance(MessageStatus.FAILED, last_error=error_text)
