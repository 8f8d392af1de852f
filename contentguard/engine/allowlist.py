# contentguard/engine/allowlist.py
"""
Allowlist suppression, applied last over the merged findings.

Entry types:
    EXACT     span text equals value
    CONTAINS  span text contains value
    REGEX     value fully matches the span text
    CATEGORY  finding category equals value

An entry's optional category narrows any type to findings of that category.
Spanless findings have no text to compare, so only CATEGORY entries match them.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Iterable, List, Optional

from contentguard.engine.models import AllowlistEntry, Finding

logger = logging.getLogger(__name__)

TYPE_EXACT = "EXACT"
TYPE_CONTAINS = "CONTAINS"
TYPE_REGEX = "REGEX"
TYPE_CATEGORY = "CATEGORY"

SCOPE_GLOBAL = "GLOBAL"
SCOPE_POLICY = "POLICY"
SCOPE_AGENT = "AGENT"


@lru_cache(maxsize=256)
def _compile(value: str) -> Optional[re.Pattern]:
    try:
        return re.compile(value)
    except re.error as e:
        logger.warning(f"Invalid allowlist regex {value!r}: {e}")
        return None


def in_scope(entry: AllowlistEntry, policy_id: Optional[int], agent_id: Optional[int]) -> bool:
    scope = (entry.scope or SCOPE_GLOBAL).upper()
    if scope == SCOPE_POLICY:
        return entry.scope_id is not None and entry.scope_id == policy_id
    if scope == SCOPE_AGENT:
        return entry.scope_id is not None and entry.scope_id == agent_id
    return True


def matches(entry: AllowlistEntry, finding: Finding, text: str) -> bool:
    if entry.category and (finding.category or "").upper() != entry.category.upper():
        return False

    kind = (entry.type or "").upper()
    if kind == TYPE_CATEGORY:
        return (finding.category or "").upper() == (entry.value or "").upper()

    if not finding.has_span or not entry.value:
        return False
    span = text[finding.start:finding.end]
    if kind == TYPE_EXACT:
        return span == entry.value
    if kind == TYPE_CONTAINS:
        return entry.value in span
    if kind == TYPE_REGEX:
        pattern = _compile(entry.value)
        return pattern is not None and pattern.fullmatch(span) is not None
    return False


def filter_findings(
    findings: List[Finding],
    entries: Optional[Iterable[AllowlistEntry]],
    text: str,
    policy_id: Optional[int] = None,
    agent_id: Optional[int] = None,
) -> List[Finding]:
    """Drop every finding matched by an in-scope entry. `text` is the text the spans index into."""
    applicable = [e for e in entries or [] if e.enabled and in_scope(e, policy_id, agent_id)]
    if not applicable or not findings:
        return list(findings or [])

    kept: List[Finding] = []
    for finding in findings:
        hit = next((e for e in applicable if matches(e, finding, text)), None)
        if hit is None:
            kept.append(finding)
        else:
            logger.debug(f"Allowlist entry {hit.id} suppressed {finding.category} from {finding.detector_source}")
    return kept
