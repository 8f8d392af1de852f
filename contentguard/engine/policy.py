"""
Policy decision engine.

Ordered severity thresholds over the merged findings:

    l3AllParseFailed and no findings  -> REVIEW   (fail closed)
    no findings                       -> ALLOW
    max severity >= blockThreshold    -> BLOCK
    max severity >= reviewThreshold   -> REVIEW
    otherwise                         -> ALLOW

Missing severity counts as 0. Boundaries are inclusive.
"""

from __future__ import annotations

import logging
from typing import List

from contentguard.engine.logging_config import log_event
from contentguard.engine.models import (
    VERDICT_ALLOW,
    VERDICT_BLOCK,
    VERDICT_REVIEW,
    Finding,
    PipelineContext,
    PolicyConfig,
)

logger = logging.getLogger(__name__)


def max_severity(findings: List[Finding]) -> float:
    return max((f.severity if f.severity is not None else 0.0 for f in findings), default=0.0)


def verdict_for(findings: List[Finding], config: PolicyConfig, l3_all_parse_failed: bool = False) -> str:
    if not findings:
        return VERDICT_REVIEW if l3_all_parse_failed else VERDICT_ALLOW
    severity = max_severity(findings)
    if severity >= config.block_threshold:
        return VERDICT_BLOCK
    if severity >= config.review_threshold:
        return VERDICT_REVIEW
    return VERDICT_ALLOW


class DecisionEngine:
    def decide(self, ctx: PipelineContext) -> bool:
        config = ctx.config
        ctx.verdict = verdict_for(ctx.findings, config, ctx.flag("l3AllParseFailed"))
        log_event(
            logger, "DECIDE",
            verdict=ctx.verdict,
            findings=len(ctx.findings),
            maxSeverity=round(max_severity(ctx.findings), 4),
            block=config.block_threshold,
            review=config.review_threshold,
            l3AllParseFailed=ctx.flag("l3AllParseFailed"),
        )
        return True
