"""
Sanitization for the screening pipeline.

Two jobs:
- Redactor: masks finding spans in the original text and may downgrade a
  BLOCK verdict to REDACTED once content was actually removed.
- OutboundSanitizer: masks PII before text is sent to any LLM provider.
"""

import logging
import re
from typing import List, Tuple

from contentguard.engine.logging_config import log_event
from contentguard.engine.models import (
    SANITIZE_MASK_PII,
    VERDICT_BLOCK,
    VERDICT_REDACTED,
    Finding,
    PipelineContext,
)

logger = logging.getLogger(__name__)

REDACTION_MARK = "[REDACTED]"

# Applied in order; phone before bank card so 11-digit mobiles keep their tag
PII_MASK_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'(?<!\d)1\d{10}(?!\d)'), '[PHONE]'),
    (re.compile(r'[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}'), '[EMAIL]'),
    (re.compile(r'(?<!\d)\d{17}[0-9Xx](?!\d)'), '[ID_CARD]'),
    (re.compile(r'(?<!\d)\d{12,19}(?!\d)'), '[BANK_CARD]'),
]


def merge_spans(findings: List[Finding], text_length: int) -> List[Tuple[int, int]]:
    """Sorted, merged [start, end) spans clipped to the text; spanless findings ignored."""
    spans = sorted(
        (max(0, f.start), min(text_length, f.end))
        for f in findings
        if f.has_span
    )
    merged: List[Tuple[int, int]] = []
    for start, end in spans:
        if start >= end:
            continue
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def mask_spans(text: str, spans: List[Tuple[int, int]], mark: str = REDACTION_MARK) -> str:
    parts = []
    cursor = 0
    for start, end in spans:
        parts.append(text[cursor:start])
        parts.append(mark)
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts)


class Redactor:
    def redact(self, ctx: PipelineContext) -> bool:
        original = ctx.original_text or ""
        spans = merge_spans(ctx.findings, len(original))
        sanitized = mask_spans(original, spans) if spans else original
        ctx.sanitized_text = sanitized

        downgraded = ctx.verdict == VERDICT_BLOCK and sanitized != original
        if downgraded:
            ctx.verdict = VERDICT_REDACTED
        log_event(logger, "REDACT", spans=len(spans), changed=sanitized != original,
                  downgraded=downgraded, verdict=ctx.verdict)
        return True


class OutboundSanitizer:
    """Rewrites text bound for an external LLM. Unknown modes pass text through."""

    def sanitize(self, text: str, mode: str = SANITIZE_MASK_PII) -> str:
        if not text:
            return text
        if (mode or "").upper() != SANITIZE_MASK_PII:
            logger.debug(f"Outbound sanitize mode {mode!r} not supported; text unchanged")
            return text
        masked = text
        for pattern, tag in PII_MASK_PATTERNS:
            masked = pattern.sub(tag, masked)
        return masked
