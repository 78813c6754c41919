"""Transcript-based voicemail detection."""

import re

from .types import AnsweredBy

# Checked in order; the first match wins.
VOICEMAIL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"leave\s*(a\s*)?(message|voicemail)",
        r"not\s*(available|here)",
        r"after\s*the\s*(tone|beep)",
        r"reached\s*(the\s*)?(voicemail|mailbox)",
        r"please\s*leave",
        r"call\s*you\s*back",
        r"can'?t\s*(come|get)\s*to\s*the\s*phone",
        r"at\s*the\s*tone",
    )
)


def matching_pattern(text: str) -> re.Pattern[str] | None:
    """Return the first voicemail pattern found in `text`."""
    for pattern in VOICEMAIL_PATTERNS:
        if pattern.search(text):
            return pattern
    return None


def is_voicemail(text: str) -> bool:
    return matching_pattern(text) is not None


def classify_transcript(text: str) -> AnsweredBy:
    """Classify what the callee said: voicemail greeting -> machine, else human."""
    return AnsweredBy.MACHINE if is_voicemail(text) else AnsweredBy.HUMAN
