"""Text hygiene for user-supplied content that ends up inside a prompt.

``sanitize_for_prompt`` removes characters a model can see but a reviewer
cannot (control codes, zero-width and bidi marks, soft hyphens) and tidies
whitespace. ``detect_suspicious_patterns`` only logs: a match never blocks
the request.
"""

from __future__ import annotations

import logging
import re
from typing import Pattern, Tuple

logger = logging.getLogger(__name__)

# ASCII control characters except tab (\x09), newline (\x0A), carriage return (\x0D)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
# Zero-width, directional and other invisible Unicode characters
_INVISIBLE_CHARS_RE = re.compile(r"[\u200B-\u200F\u2028-\u202F\u205F-\u206F\uFEFF]")
_SOFT_HYPHEN = "\u00ad"
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")

_XML_ESCAPES = {"&": "&amp;", "<": "&lt;", ">": "&gt;"}

# Known prompt-injection phrasings and chat-template control tokens.
SUSPICIOUS_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"ignore\s+(all\s+)?(the\s+)?(previous|prior|above|earlier)?\s*instructions",
        r"forget\s+(all\s+)?(your\s+|the\s+|previous\s+|prior\s+)?instructions",
        r"disregard\s+(all\s+)?(the\s+)?(previous|prior|above|earlier)",
        r"system\s+prompt",
        r"you\s+are\s+now\s+",
        r"new\s+instructions\s*:",
        r"reveal\s+(your|the)\s+(instructions|prompt|rules)",
        r"<\|im_(start|end)\|>",
        r"<\|(system|user|assistant|endoftext)\|>",
        r"\[/?INST\]",
        r"<</?SYS>>",
        r"</?(system|assistant)>",
    )
)


def sanitize_string(text: str) -> str:
    """Strip control characters and invisible Unicode from *text*."""
    text = _CONTROL_CHARS_RE.sub("", text)
    return _INVISIBLE_CHARS_RE.sub("", text)


def sanitize_for_prompt(text: str) -> str:
    """Prepare user text for embedding in a prompt.

    Strips control/invisible characters and soft hyphens, collapses runs of
    three or more newlines to exactly two and trims the ends. Total and
    idempotent: ``sanitize_for_prompt(sanitize_for_prompt(x)) == sanitize_for_prompt(x)``.
    """
    text = sanitize_string(text).replace(_SOFT_HYPHEN, "")
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def detect_suspicious_patterns(text: str, field_name: str) -> None:
    """Log a warning if *text* matches a known injection phrasing.

    At most one entry is logged per call; the first matching pattern wins.
    """
    if not text:
        return
    for pattern in SUSPICIOUS_PATTERNS:
        match = pattern.search(text)
        if match:
            logger.warning(
                "Suspicious prompt-injection pattern in field=%s pattern=%r",
                field_name,
                pattern.pattern,
                extra={"field_name": field_name, "matched": match.group(0)[:100]},
            )
            return


def escape_xml(text: str) -> str:
    """Escape ``&``, ``<`` and ``>`` so *text* cannot open or close a prompt tag."""
    return "".join(_XML_ESCAPES.get(ch, ch) for ch in text)
