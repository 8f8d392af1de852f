# contentguard/engine/orchestrator.py
"""
Detect stage: runs all three tiers for one text under one policy snapshot.

Pipeline:
  1. Partition the snapshot's enabled rules by type
  2. REGEX rules -> tier one, L2_HEURISTIC rules -> tier two (synchronous)
  3. runL3 = not disableL3 and llmEnabled and any LLM rule
  4. Optionally mask PII in the text sent to the LLM provider
  5. One LlmDetectResult per LLM rule: precomputed (batch) or live,
     live rules fanned out on a bounded pool
  6. Merge findings, record per-mode counters, set l3AllParseFailed
  7. Apply the allowlist to the detection text, then map spans back to
     the original text

detect() never raises. Any rule failure degrades to "no findings from that
rule" and is logged with a reason code.
"""

from __future__ import annotations

import logging
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Tuple

from contentguard.engine.allowlist import filter_findings
from contentguard.engine.config import Settings
from contentguard.engine.cost_context import (
    bound_context,
    get_context,
    run_with_context,
)
from contentguard.engine.exceptions import (
    L1_RULE_FAILED,
    L2_RULE_FAILED,
    L3_PRECOMPUTED_MISSING,
    L3_RULE_EXECUTION_FAILED,
    L3_RULE_INTERRUPTED,
    L3_RULE_TIMEOUT,
)
from contentguard.engine.extractor import StructuredLlmExtractor
from contentguard.engine.heuristics import L2Detector
from contentguard.engine.logging_config import log_event
from contentguard.engine.models import (
    RULE_L2_HEURISTIC,
    RULE_LLM,
    RULE_REGEX,
    SOURCE_L1_REGEX,
    Finding,
    LlmDetectResult,
    PipelineContext,
    Rule,
)
from contentguard.engine.normalize import NormalizedText
from contentguard.engine.patterns import RegexDetector
from contentguard.engine.sanitize import OutboundSanitizer

logger = logging.getLogger(__name__)

# Older policies still carry the pre-rename tier-two type
L2_RULE_TYPES = (RULE_L2_HEURISTIC, "L2_DUMMY")

META_DISABLE_L3 = "disableL3"
META_L3_ATTEMPTED = "l3Attempted"
META_L3_ALL_PARSE_FAILED = "l3AllParseFailed"
META_OUTBOUND_SANITIZED = "outboundSanitized"
META_OUTBOUND_SANITIZE_MODE = "outboundSanitizeMode"
META_PRECOMPUTED = "precomputedL3Results"
META_ALLOWLISTS = "allowlists"
META_NORMALIZATION = "normalization"


class DetectionOrchestrator:
    """
    Shared by all requests. Per-request state lives on the PipelineContext.
    """

    def __init__(
        self,
        regex_detector: Optional[RegexDetector] = None,
        l2_detector: Optional[L2Detector] = None,
        extractor: Optional[StructuredLlmExtractor] = None,
        settings: Optional[Settings] = None,
        outbound_sanitizer: Optional[OutboundSanitizer] = None,
    ):
        self.settings = settings or Settings()
        self.regex = regex_detector or RegexDetector(self.settings.patterns_dir)
        self.l2 = l2_detector or L2Detector(self.settings.l2_provider)
        self.extractor = extractor
        self.outbound = outbound_sanitizer or OutboundSanitizer()

    def detect(self, ctx: PipelineContext) -> bool:
        snapshot = ctx.policy_snapshot
        text = ctx.detection_text
        config = ctx.config
        rules: List[Rule] = [r for r in (snapshot.rules if snapshot else ()) if r.enabled]

        regex_rules = [r for r in rules if r.is_type(RULE_REGEX)]
        l2_rules = [r for r in rules if any(r.is_type(t) for t in L2_RULE_TYPES)]
        llm_rules = [r for r in rules if r.is_type(RULE_LLM)]

        l1_findings = self._run_l1(text, regex_rules)
        l2_findings = self._run_l2(text, l2_rules, ctx)

        run_l3 = not ctx.flag(META_DISABLE_L3) and config.llm_enabled and bool(llm_rules)
        ctx.metadata[META_L3_ATTEMPTED] = run_l3
        escalate = self.should_escalate(l1_findings, l2_findings, config.review_threshold)
        log_event(logger, "L3_ESCALATION_HINT", level=logging.DEBUG,
                  warranted=escalate, runL3=run_l3, llmRules=len(llm_rules))

        l3_findings: List[Finding] = []
        success_count = fail_count = empty_count = 0
        mode_counts: Dict[str, int] = {}

        if run_l3:
            l3_text, masked = self._outbound_text(text, ctx)
            results = self._run_l3(ctx, l3_text, llm_rules)
            for rule, result in results:
                mode = result.mode or "UNKNOWN"
                mode_counts[mode] = mode_counts.get(mode, 0) + 1
                if result.parse_success:
                    success_count += 1
                    if not result.findings:
                        empty_count += 1
                    l3_findings.extend(self._adopt_l3(result.findings, rule, masked))
                else:
                    fail_count += 1
                log_event(
                    logger, "L3_RULE_RESULT",
                    ruleId=rule.id,
                    mode=mode,
                    success=result.parse_success,
                    repaired=result.repaired,
                    errorCode=result.error_code,
                    findings=len(result.findings),
                )

        ctx.metadata[META_L3_ALL_PARSE_FAILED] = run_l3 and success_count == 0
        ctx.metrics.update({
            "l1FindingCount": len(l1_findings),
            "l2FindingCount": len(l2_findings),
            "l3RuleCount": len(llm_rules) if run_l3 else 0,
            "l3ParseSuccessCount": success_count,
            "l3ParseFailCount": fail_count,
            "l3EmptyStructuredCount": empty_count,
            "l3ModeCounts": mode_counts,
        })

        merged = l1_findings + l2_findings + l3_findings
        before = len(merged)
        # Entries match the text the detectors saw; spans are still in its coordinates here.
        kept = filter_findings(
            merged,
            ctx.metadata.get(META_ALLOWLISTS),
            text,
            policy_id=snapshot.policy_id if snapshot else None,
            agent_id=ctx.agent_id,
        )
        ctx.findings = self._to_original(kept, ctx)

        log_event(
            logger, "DETECT_SUMMARY",
            policyId=snapshot.policy_id if snapshot else None,
            versionId=snapshot.version_id if snapshot else None,
            l1=len(l1_findings),
            l2=len(l2_findings),
            l3=len(l3_findings),
            l3Attempted=run_l3,
            l3AllParseFailed=ctx.metadata[META_L3_ALL_PARSE_FAILED],
            allowlisted=before - len(kept),
            escalationHint=escalate,
        )
        return True

    # ------------------------------------------------------------------
    # Tier one / two
    # ------------------------------------------------------------------

    def _run_l1(self, text: str, rules: List[Rule]) -> List[Finding]:
        findings: List[Finding] = []
        for rule in rules:
            try:
                findings.extend(self.regex.detect(text, rule))
            except Exception as e:
                logger.warning(f"reason={L1_RULE_FAILED} rule={rule.id} error={e}")
        return findings

    def _run_l2(self, text: str, rules: List[Rule], ctx: PipelineContext) -> List[Finding]:
        findings: List[Finding] = []
        for rule in rules:
            try:
                findings.extend(self.l2.detect(text, rule, ctx.config))
            except Exception as e:
                logger.warning(f"reason={L2_RULE_FAILED} rule={rule.id} error={e}")
        return findings

    @staticmethod
    def should_escalate(l1: List[Finding], l2: List[Finding], review_threshold: float) -> bool:
        """Informational only; tier three runs whenever it is enabled."""
        if l1:
            return True
        return any(f.severity is not None and f.severity >= review_threshold for f in l2)

    # ------------------------------------------------------------------
    # Tier three
    # ------------------------------------------------------------------

    def _outbound_text(self, text: str, ctx: PipelineContext) -> Tuple[str, bool]:
        config = ctx.config
        if not config.outbound_sanitize_enabled:
            return text, False
        sanitized = self.outbound.sanitize(text, config.outbound_sanitize_mode)
        if sanitized == text:
            return text, False
        ctx.metadata[META_OUTBOUND_SANITIZED] = True
        ctx.metadata[META_OUTBOUND_SANITIZE_MODE] = config.outbound_sanitize_mode
        return sanitized, True

    @staticmethod
    def custom_prompt(rule: Rule) -> Optional[str]:
        prompt = rule.config.get("prompt")
        if isinstance(prompt, str) and prompt.strip():
            return prompt.strip()
        return None

    @staticmethod
    def _adopt_l3(findings: List[Finding], rule: Rule, masked: bool) -> List[Finding]:
        """Attach rule identity; spans on masked text do not index the original."""
        adopted = []
        for finding in findings:
            finding.rule_id = rule.id
            if not finding.category:
                finding.category = rule.category
            if masked:
                finding.start = None
                finding.end = None
            adopted.append(finding)
        return adopted

    def _run_l3(self, ctx: PipelineContext, text: str, rules: List[Rule]) -> List[Tuple[Rule, LlmDetectResult]]:
        precomputed = ctx.metadata.get(META_PRECOMPUTED)
        if isinstance(precomputed, dict) and precomputed:
            return [(rule, self._precomputed_result(precomputed, rule)) for rule in rules]

        concurrency = max(1, min(self.settings.max_rule_concurrency, len(rules)))
        if concurrency == 1:
            return [(rule, self._extract_for_rule(ctx, text, rule)) for rule in rules]
        return self._run_parallel(ctx, text, rules, concurrency)

    @staticmethod
    def _precomputed_result(precomputed: Dict[Any, Any], rule: Rule) -> LlmDetectResult:
        result = precomputed.get(rule.id)
        if isinstance(result, LlmDetectResult):
            return result
        logger.warning(f"reason={L3_PRECOMPUTED_MISSING} rule={rule.id}")
        return LlmDetectResult.failure(L3_PRECOMPUTED_MISSING)

    def _extract_for_rule(self, ctx: PipelineContext, text: str, rule: Rule) -> LlmDetectResult:
        if self.extractor is None:
            return LlmDetectResult.failure(L3_RULE_EXECUTION_FAILED)
        trace_id = ctx.trace_id or ctx.metadata.get("jobRunId")
        try:
            if trace_id and ctx.agent_id is not None:
                with bound_context(str(trace_id), ctx.agent_id):
                    return self.extractor.extract(text, self.custom_prompt(rule))
            return self.extractor.extract(text, self.custom_prompt(rule))
        except Exception as e:
            logger.warning(f"reason={L3_RULE_EXECUTION_FAILED} rule={rule.id} error={e}")
            return LlmDetectResult.failure(L3_RULE_EXECUTION_FAILED)

    def _run_parallel(
        self, ctx: PipelineContext, text: str, rules: List[Rule], concurrency: int
    ) -> List[Tuple[Rule, LlmDetectResult]]:
        captured = get_context()
        timeout = self.settings.rule_timeout_ms / 1000.0 if self.settings.rule_timeout_ms > 0 else None
        results: List[Tuple[Rule, LlmDetectResult]] = []

        executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="l3-rule")
        try:
            futures = [
                (rule, executor.submit(run_with_context, captured,
                                       lambda r=rule: self._extract_for_rule(ctx, text, r)))
                for rule in rules
            ]
            for rule, future in futures:
                try:
                    results.append((rule, future.result(timeout=timeout)))
                except FutureTimeout:
                    future.cancel()
                    logger.warning(f"reason={L3_RULE_TIMEOUT} rule={rule.id}")
                    results.append((rule, LlmDetectResult.failure(L3_RULE_TIMEOUT)))
                except CancelledError:
                    logger.warning(f"reason={L3_RULE_INTERRUPTED} rule={rule.id}")
                    results.append((rule, LlmDetectResult.failure(L3_RULE_INTERRUPTED)))
                except Exception as e:
                    logger.warning(f"reason={L3_RULE_EXECUTION_FAILED} rule={rule.id} error={e}")
                    results.append((rule, LlmDetectResult.failure(L3_RULE_EXECUTION_FAILED)))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    # ------------------------------------------------------------------
    # Span mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_original(findings: List[Finding], ctx: PipelineContext) -> List[Finding]:
        normalization = ctx.metadata.get(META_NORMALIZATION)
        if not isinstance(normalization, NormalizedText) or not normalization.changed:
            return findings
        mapped: List[Finding] = []
        for finding in findings:
            if finding.has_span:
                span = normalization.to_original_span(finding.start, finding.end)
                if span is None:
                    logger.debug(f"Dropping unmappable span from {finding.detector_source}")
                    continue
                finding.start, finding.end = span
                if finding.detector_source == SOURCE_L1_REGEX:
                    finding.evidence = normalization.original[span[0]:span[1]][:80]
            mapped.append(finding)
        return mapped
