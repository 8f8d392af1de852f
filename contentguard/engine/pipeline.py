# contentguard/engine/pipeline.py
"""
Main screening pipeline - resolve, detect, decide, optionally redact.

This is the main entry point for content screening. Per call it:
    1. Resolves the policy snapshot (explicit policyId, else the agent binding)
    2. Normalizes the text (offset map kept for span mapping)
    3. Runs the tiered detect stage (regex -> heuristic/ML -> LLM)
    4. Decides the verdict from the merged findings
    5. Redacts finding spans when sanitized output was asked for

Usage:
    from contentguard.engine.pipeline import ContentPipeline

    pipeline = ContentPipeline.from_env(store)
    response = pipeline.check({"text": "call 13800138000", "policyId": 1})

Only PolicyUnavailable and InvalidInput escape check()/sanitize(); every
detection problem degrades into data on the context instead.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from contentguard.api.schemas import (
    BatchCheckItem,
    BatchCheckResult,
    CheckRequest,
    CheckResponse,
    StatusResponse,
)
from contentguard.engine.config import Settings
from contentguard.engine.exceptions import ContentGuardError, InvalidInput, PolicyUnavailable
from contentguard.engine.extractor import StructuredLlmExtractor
from contentguard.engine.heuristics import L2Detector, MLProvider
from contentguard.engine.llm_client import ChatModel, build_chat_model
from contentguard.engine.logging_config import setup_logging
from contentguard.engine.models import (
    RULE_LLM,
    VERDICT_ALLOW,
    VERDICT_REVIEW,
    BatchItem,
    LlmDetectResult,
    PipelineContext,
    PolicySnapshot,
)
from contentguard.engine.normalize import normalize_text
from contentguard.engine.orchestrator import (
    META_ALLOWLISTS,
    META_DISABLE_L3,
    META_NORMALIZATION,
    META_PRECOMPUTED,
    DetectionOrchestrator,
)
from contentguard.engine.patterns import RegexDetector
from contentguard.engine.policy import DecisionEngine
from contentguard.engine.resolver import PolicySnapshotResolver
from contentguard.engine.sanitize import OutboundSanitizer, Redactor
from contentguard.engine.store import InMemoryPolicyStore
from contentguard.engine.utils import Timer

logger = logging.getLogger(__name__)

RequestLike = Union[CheckRequest, Dict[str, Any]]


def _parse(model, payload):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidInput(f"Malformed request: {e.errors()[0].get('msg', e)}") from e


class ContentPipeline:
    """
    Screening pipeline over one policy store.

    Thread-safe: every call builds its own PipelineContext; the collaborators
    held here (detectors, extractor, capability cache) are shared.
    """

    def __init__(
        self,
        store: InMemoryPolicyStore,
        settings: Optional[Settings] = None,
        chat_model: Optional[ChatModel] = None,
        extractor: Optional[StructuredLlmExtractor] = None,
        orchestrator: Optional[DetectionOrchestrator] = None,
        clock=datetime.now,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.resolver = PolicySnapshotResolver(store, self.settings.policy_governance_enabled)
        self.extractor = extractor or StructuredLlmExtractor(chat_model, self.settings)
        self.outbound = OutboundSanitizer()
        self.orchestrator = orchestrator or DetectionOrchestrator(
            regex_detector=RegexDetector(self.settings.patterns_dir),
            l2_detector=L2Detector(self.settings.l2_provider, MLProvider(model_name=self.settings.l2_ml_model)),
            extractor=self.extractor,
            settings=self.settings,
            outbound_sanitizer=self.outbound,
        )
        self.decision = DecisionEngine()
        self.redactor = Redactor()
        self._clock = clock

    @classmethod
    def from_env(cls, store: InMemoryPolicyStore) -> "ContentPipeline":
        settings = Settings.from_env()
        setup_logging(settings.log_level)
        return cls(store, settings, chat_model=build_chat_model(settings))

    def close(self) -> None:
        self.extractor.close()

    # =========================================================================
    # Public API
    # =========================================================================

    def check(self, request: RequestLike, agent_id: Optional[int] = None,
              trace_id: Optional[str] = None) -> CheckResponse:
        ctx = self.run(request, agent_id=agent_id, trace_id=trace_id, sanitize=False)
        return self.to_response(ctx)

    def sanitize(self, request: RequestLike, agent_id: Optional[int] = None,
                 trace_id: Optional[str] = None) -> CheckResponse:
        ctx = self.run(request, agent_id=agent_id, trace_id=trace_id, sanitize=True)
        return self.to_response(ctx)

    @staticmethod
    def to_response(ctx: PipelineContext) -> CheckResponse:
        return CheckResponse(
            verdict=ctx.verdict or VERDICT_ALLOW,
            categories=ctx.categories(),
            sanitized_text=ctx.sanitized_text,
        )

    def run(
        self,
        request: RequestLike,
        agent_id: Optional[int] = None,
        trace_id: Optional[str] = None,
        sanitize: bool = False,
        snapshot: Optional[PolicySnapshot] = None,
        precomputed: Optional[Dict[int, LlmDetectResult]] = None,
    ) -> PipelineContext:
        """Full pipeline for one text; returns the finished context for downstream readers."""
        request = _parse(CheckRequest, request)
        timer = Timer()
        timer.start()

        text = request.text or ""
        ctx = PipelineContext(original_text=text, agent_id=agent_id, trace_id=trace_id)

        if not text.strip():
            ctx.verdict = VERDICT_ALLOW
            if sanitize:
                ctx.sanitized_text = text
            ctx.metrics["latencyMs"] = timer.results()
            return ctx

        with timer.stage("resolve"):
            ctx.policy_snapshot = snapshot or self.resolve(request, agent_id)

        with timer.stage("normalize"):
            normalized = normalize_text(text)
            ctx.normalized_text = normalized.text
            ctx.metadata[META_NORMALIZATION] = normalized
            ctx.metadata["confusablesDetected"] = normalized.confusables_detected

        ctx.metadata[META_DISABLE_L3] = bool(request.disable_l3)
        ctx.metadata[META_ALLOWLISTS] = self.store.list_active_allowlists(self._clock())
        if precomputed:
            ctx.metadata[META_PRECOMPUTED] = precomputed

        with timer.stage("detect"):
            self.orchestrator.detect(ctx)
        with timer.stage("decide"):
            self.decision.decide(ctx)
        if sanitize:
            with timer.stage("redact"):
                self.redactor.redact(ctx)

        ctx.metrics["latencyMs"] = timer.results()
        logger.debug(
            f"policy={ctx.policy_snapshot.policy_id} verdict={ctx.verdict} "
            f"findings={len(ctx.findings)} latency={ctx.metrics['latencyMs']['total']}ms"
        )
        return ctx

    def resolve(self, request: CheckRequest, agent_id: Optional[int] = None) -> PolicySnapshot:
        policy_id = request.policy_id
        if policy_id is None:
            policy_id = self.store.find_binding(agent_id, request.scene).policy_id
        route_key = request.route_key
        if not route_key and agent_id is not None:
            route_key = str(agent_id)
        return self.resolver.resolve(policy_id, route_key)

    # =========================================================================
    # Batch
    # =========================================================================

    def check_batch(
        self,
        items: Iterable[Union[BatchCheckItem, Dict[str, Any]]],
        agent_id: Optional[int] = None,
        trace_id: Optional[str] = None,
        sanitize: bool = False,
    ) -> List[BatchCheckResult]:
        """
        Screen many texts with one tier-three call per LLM rule per policy version.

        Items whose policy cannot be resolved come back as REVIEW with an error
        code instead of failing the whole batch.
        """
        parsed = [_parse(BatchCheckItem, item) for item in items]

        snapshots: Dict[str, PolicySnapshot] = {}
        errors: Dict[str, str] = {}
        for item in parsed:
            if not (item.text or "").strip():
                continue
            try:
                snapshots[item.item_id] = self.resolve(item, agent_id)
            except PolicyUnavailable as e:
                logger.warning(f"Batch item {item.item_id}: {e}")
                errors[item.item_id] = e.code

        precomputed = self._precompute(parsed, snapshots)

        results: List[BatchCheckResult] = []
        for item in parsed:
            if item.item_id in errors:
                results.append(BatchCheckResult(item_id=item.item_id, verdict=VERDICT_REVIEW,
                                                error=errors[item.item_id]))
                continue
            try:
                ctx = self.run(item, agent_id=agent_id, trace_id=trace_id, sanitize=sanitize,
                               snapshot=snapshots.get(item.item_id),
                               precomputed=precomputed.get(item.item_id))
            except ContentGuardError as e:
                logger.warning(f"Batch item {item.item_id}: {e}")
                results.append(BatchCheckResult(item_id=item.item_id, verdict=VERDICT_REVIEW, error=e.code))
                continue
            response = self.to_response(ctx)
            results.append(BatchCheckResult(item_id=item.item_id, **response.model_dump()))
        return results

    def _precompute(
        self,
        items: List[BatchCheckItem],
        snapshots: Dict[str, PolicySnapshot],
    ) -> Dict[str, Dict[int, LlmDetectResult]]:
        """itemId -> {ruleId -> result} for every item that will run tier three."""
        if not self.settings.batch_enabled or not self.extractor.is_available():
            return {}

        groups: Dict[Tuple[int, Optional[int]], List[Tuple[BatchCheckItem, PolicySnapshot]]] = {}
        for item in items:
            snapshot = snapshots.get(item.item_id)
            if snapshot is None or item.disable_l3 or not snapshot.config.llm_enabled:
                continue
            groups.setdefault((snapshot.policy_id, snapshot.version_id), []).append((item, snapshot))

        precomputed: Dict[str, Dict[int, LlmDetectResult]] = {}
        for (policy_id, version_id), members in groups.items():
            snapshot = members[0][1]
            llm_rules = [r for r in snapshot.rules if r.enabled and r.is_type(RULE_LLM)]
            if not llm_rules:
                continue
            batch_items = [BatchItem(item.item_id, self._l3_text(item.text, snapshot)) for item, _ in members]
            for rule in llm_rules:
                batch = self.extractor.extract_batch(batch_items, DetectionOrchestrator.custom_prompt(rule))
                logger.info(
                    f"Batch L3 policy={policy_id} version={version_id} rule={rule.id} "
                    f"items={len(batch_items)} mode={batch.mode} success={batch.parse_success}"
                )
                for item_id, result in batch.results.items():
                    precomputed.setdefault(item_id, {})[rule.id] = result
        return precomputed

    def _l3_text(self, text: str, snapshot: PolicySnapshot) -> str:
        """Same text the orchestrator would send for this item."""
        normalized = normalize_text(text).text
        config = snapshot.config
        if config.outbound_sanitize_enabled:
            return self.outbound.sanitize(normalized, config.outbound_sanitize_mode)
        return normalized

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> StatusResponse:
        provider = self.extractor.provider if self.extractor.is_available() else None
        return StatusResponse(
            strategy=self.settings.l3_strategy,
            enabled_modes=self.extractor.attempt_order(),
            llm_provider=provider,
            llm_available=self.extractor.is_available(),
            l2_provider=self.settings.l2_provider,
            batch_enabled=self.settings.batch_enabled,
            governance_enabled=self.settings.policy_governance_enabled,
            regex_packs=self.orchestrator.regex.pack_names(),
            preferred_mode=self.extractor.capabilities.get(provider) if provider else None,
        )
