"""
Shared data model for the content screening pipeline.

Everything a request touches lives here: policy snapshots, rules, findings,
allowlist entries, tier-three results and the per-request PipelineContext.
Snapshots are immutable once resolved; the context is owned by one pipeline
run and is never shared across requests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# Verdicts
VERDICT_ALLOW = "ALLOW"
VERDICT_REVIEW = "REVIEW"
VERDICT_BLOCK = "BLOCK"
VERDICT_REDACTED = "REDACTED"

# Rule types
RULE_REGEX = "REGEX"
RULE_L2_HEURISTIC = "L2_HEURISTIC"
RULE_LLM = "LLM"

# Detector sources
SOURCE_L1_REGEX = "L1_REGEX"
SOURCE_L3_LLM = "L3_LLM"

# Outbound sanitize modes
SANITIZE_MASK_PII = "MASK_PII"

DEFAULT_BLOCK_THRESHOLD = 0.7
DEFAULT_REVIEW_THRESHOLD = 0.4
DEFAULT_L2_THRESHOLD = 0.6


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_threshold(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, 0.0), 1.0)


def parse_json_object(raw: Optional[str], what: str = "config") -> Dict[str, Any]:
    """Parse a JSON object string; anything unparsable becomes {}."""
    if raw is None or not str(raw).strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Failed to parse {what} JSON: {e}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds and tier-three switches of one policy (version)."""
    block_threshold: float = DEFAULT_BLOCK_THRESHOLD
    review_threshold: float = DEFAULT_REVIEW_THRESHOLD
    l2_threshold: float = DEFAULT_L2_THRESHOLD
    llm_enabled: bool = False
    outbound_sanitize_enabled: bool = False
    outbound_sanitize_mode: str = SANITIZE_MASK_PII

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PolicyConfig":
        data = data or {}
        block = _as_threshold(data.get("blockThreshold"), DEFAULT_BLOCK_THRESHOLD)
        review = _as_threshold(data.get("reviewThreshold"), DEFAULT_REVIEW_THRESHOLD)
        if review >= block:
            # block is kept as configured; review keeps the default review/block proportion under it
            lowered = round(block * DEFAULT_REVIEW_THRESHOLD / DEFAULT_BLOCK_THRESHOLD, 4)
            logger.warning(
                f"Policy thresholds out of order (review={review} block={block}); "
                f"lowering review to {lowered}"
            )
            review = lowered
        mode = data.get("outboundSanitizeMode") or SANITIZE_MASK_PII
        return cls(
            block_threshold=block,
            review_threshold=review,
            l2_threshold=_as_threshold(data.get("l2Threshold"), DEFAULT_L2_THRESHOLD),
            llm_enabled=_as_bool(data.get("llmEnabled"), False),
            outbound_sanitize_enabled=_as_bool(data.get("outboundSanitizeEnabled"), False),
            outbound_sanitize_mode=str(mode).strip().upper(),
        )

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "PolicyConfig":
        return cls.from_dict(parse_json_object(raw, "policy config"))


@dataclass(frozen=True)
class Rule:
    """One detection rule as bound to a policy."""
    id: int
    rule_type: str
    category: str
    enabled: bool = True
    config_json: Optional[str] = None
    priority: int = 0

    @property
    def config(self) -> Dict[str, Any]:
        return parse_json_object(self.config_json, f"rule {self.id} config")

    def is_type(self, rule_type: str) -> bool:
        return (self.rule_type or "").strip().upper() == rule_type


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable, versioned bundle a single pipeline run evaluates against."""
    policy_id: int
    name: str
    default_action: Optional[str]
    config: PolicyConfig
    rules: tuple = ()
    version_id: Optional[int] = None
    version_no: Optional[int] = None


@dataclass
class Finding:
    """One detected risk instance. Spans are [start, end) offsets."""
    category: str
    severity: Optional[float] = None
    start: Optional[int] = None
    end: Optional[int] = None
    detector_source: Optional[str] = None
    rule_id: Optional[int] = None
    evidence: Optional[str] = None

    @property
    def has_span(self) -> bool:
        return self.start is not None and self.end is not None

    def is_valid(self, text_length: int) -> bool:
        """Severity within [0,1]; spans either both absent or 0 <= start < end <= length."""
        if self.severity is not None and not (0.0 <= self.severity <= 1.0):
            return False
        if self.start is None and self.end is None:
            return True
        if self.start is None or self.end is None:
            return False
        return 0 <= self.start < self.end <= text_length


@dataclass(frozen=True)
class AllowlistEntry:
    """Suppresses findings it matches, regardless of severity."""
    type: str                 # EXACT | CONTAINS | REGEX | CATEGORY
    value: str
    category: Optional[str] = None
    scope: str = "GLOBAL"     # GLOBAL | POLICY | AGENT
    scope_id: Optional[int] = None
    enabled: bool = True
    expire_time: Optional[datetime] = None
    id: Optional[int] = None

    def is_active(self, now: datetime) -> bool:
        return self.enabled and (self.expire_time is None or self.expire_time > now)


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of one strategy attempt inside an extraction chain."""
    mode: str
    success: bool
    error_code: Optional[str] = None


@dataclass
class LlmDetectResult:
    """Typed outcome of a tier-three extraction; failures are data, never raised."""
    findings: List[Finding] = field(default_factory=list)
    parse_success: bool = False
    repaired: bool = False
    mode: str = "UNKNOWN"
    error_code: Optional[str] = None
    raw_output: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)

    @classmethod
    def success(cls, findings: Optional[List[Finding]], repaired: bool = False,
                mode: Optional[str] = None) -> "LlmDetectResult":
        return cls(findings=list(findings or []), parse_success=True, repaired=repaired,
                   mode=mode or "UNKNOWN")

    @classmethod
    def failure(cls, error_code: Optional[str], raw_output: Optional[str] = None,
                mode: Optional[str] = None) -> "LlmDetectResult":
        return cls(findings=[], parse_success=False, repaired=False,
                   mode=mode or error_code or "FAILED", error_code=error_code,
                   raw_output=raw_output)


@dataclass(frozen=True)
class BatchItem:
    item_id: str
    text: str


@dataclass
class BatchDetectResult:
    """Per-item results of one batch call; holds exactly one entry per input item."""
    results: Dict[str, LlmDetectResult]
    parse_success: bool
    mode: str
    error_code: Optional[str] = None


@dataclass
class PipelineContext:
    """
    Per-request aggregate. Created once per check/sanitize call, mutated stage by
    stage by the pipeline only, then handed to downstream readers.
    """
    original_text: str
    policy_snapshot: Optional[PolicySnapshot] = None
    normalized_text: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)
    verdict: Optional[str] = None
    sanitized_text: Optional[str] = None
    agent_id: Optional[int] = None
    trace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def detection_text(self) -> str:
        if self.normalized_text is not None:
            return self.normalized_text
        return self.original_text or ""

    @property
    def config(self) -> PolicyConfig:
        if self.policy_snapshot is not None and self.policy_snapshot.config is not None:
            return self.policy_snapshot.config
        return PolicyConfig()

    def flag(self, name: str) -> bool:
        return self.metadata.get(name) is True

    def categories(self) -> List[str]:
        seen: List[str] = []
        for finding in self.findings:
            if finding.category and finding.category not in seen:
                seen.append(finding.category)
        return seen
