"""
Tier two: heuristic and ML-assisted detection.

Heuristic kinds (configJson.heuristic, else inferred from the rule category):
1. REPETITION - a run of one character longer than maxRepetition
2. INTENT     - weighted phrase/structure signals, dampened by benign context

Provider routing (L2_PROVIDER):
- HEURISTIC: heuristics only
- ML:        transformer classifier, heuristic fallback on failure
- AUTO:      classifier first, heuristic backstop when it finds nothing

detect() never raises; total provider failure yields [].
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List, Optional

from contentguard.engine.exceptions import L2_RULE_FAILED
from contentguard.engine.ml_defense import MLDefense, get_classifier
from contentguard.engine.models import Finding, PolicyConfig, Rule

logger = logging.getLogger(__name__)

SOURCE_REPETITION = "L2_HEURISTIC_REPETITION"
SOURCE_INTENT = "L2_HEURISTIC_INTENT"
SOURCE_ML = "L2_ML"

KIND_REPETITION = "REPETITION"
KIND_INTENT = "INTENT"

DEFAULT_MAX_REPETITION = 8
DEFAULT_REPETITION_SEVERITY = 0.5
BENIGN_DAMPING = 0.5

Signal = Dict[str, Any]


# =============================================================================
# INTENT SIGNALS (name, weight)
# =============================================================================

IMPERATIVE_VERBS = (
    r'(reveal|show|display|print|output|tell|give|send|'
    r'execute|run|perform|delete|drop|grant|disable|bypass)'
)

INTENT_PATTERNS: List[tuple] = [
    (re.compile(
        r'\b(ignore|forget|disregard)\s+(all\s+)?(previous|prior|above|earlier|everything)\b',
        re.I
    ), 'override_phrase', 35),

    (re.compile(
        rf'\b(ignore|forget|disregard)\s+.{{0,40}}?\b(and|then|now)\s+{IMPERATIVE_VERBS}\b',
        re.I
    ), 'imperative_override_structure', 25),

    (re.compile(
        r'\b(system\s+prompt|hidden\s+instructions|initial\s+configuration)\b',
        re.I
    ), 'instruction_exfiltration', 25),

    (re.compile(
        r'\b(drop|truncate|wipe|purge)\s+(the\s+)?(table|database|schema|bucket|all)\b|'
        r'\bdelete\s+(all|every)\b',
        re.I
    ), 'destructive_operation', 35),

    (re.compile(
        r'\b(admin|root|superuser)\s+(access|privileges?|rights|mode)\b|'
        r'\b(escalate|elevate)\s+(my\s+)?(privileges?|permissions?)\b',
        re.I
    ), 'privilege_abuse', 30),

    (re.compile(
        r'\b(you\s+are\s+now|act\s+as|pretend\s+to\s+be)\s+(an?\s+)?(unrestricted|unfiltered|jailbroken)\b',
        re.I
    ), 'role_manipulation', 30),

    (re.compile(r'(忽略|无视)(之前|以上|前面)|删除(所有|全部)|管理员权限'), 'intent_cn', 35),
]

BENIGN_CONTEXT_PATTERNS: List[tuple] = [
    (re.compile(
        r'\b(it\s+says|found\s+this\s+in|the\s+phrase|for\s+example|'
        r'what\s+does\s+(this|that|it)\s+mean|is\s+this\s+(a\s+)?prompt\s+injection)\b',
        re.I
    ), 'benign_quotation_context'),
    (re.compile(
        r'\bfor\s+(research|analysis|testing|educational)\b|\bexplain\s+(why|how)\b',
        re.I
    ), 'benign_analysis_intent'),
]


def collect_intent_signals(text: str) -> List[Signal]:
    """Weighted signals present in text; benign signals carry weight 0."""
    signals: List[Signal] = []
    for pattern, name, weight in INTENT_PATTERNS:
        match = pattern.search(text)
        if match:
            signals.append({'name': name, 'weight': weight, 'evidence': match.group()[:80]})
    for pattern, name in BENIGN_CONTEXT_PATTERNS:
        match = pattern.search(text)
        if match:
            signals.append({'name': name, 'weight': 0, 'evidence': match.group()[:80]})
    return signals


def intent_score(signals: List[Signal]) -> float:
    """Sum of weights capped at 100, scaled to [0, 1]; halved under benign context."""
    raw = min(sum(s['weight'] for s in signals), 100) / 100.0
    if any(s['name'].startswith('benign_') for s in signals):
        raw *= BENIGN_DAMPING
    return round(raw, 4)


class HeuristicProvider:
    """Pure, local, deterministic."""

    name = "HEURISTIC"

    def detect_repetition(self, text: str, rule: Rule) -> List[Finding]:
        config = rule.config
        try:
            max_repetition = max(1, int(config.get("maxRepetition", DEFAULT_MAX_REPETITION)))
        except (TypeError, ValueError):
            max_repetition = DEFAULT_MAX_REPETITION
        severity = float(config.get("severity", DEFAULT_REPETITION_SEVERITY))

        pattern = re.compile(r'(.)\1{%d,}' % max_repetition, re.S)
        findings = []
        for match in pattern.finditer(text):
            findings.append(Finding(
                category=rule.category,
                severity=severity,
                start=match.start(),
                end=match.end(),
                detector_source=SOURCE_REPETITION,
                rule_id=rule.id,
                evidence=match.group()[:40],
            ))
        return findings

    def detect_intent(self, text: str, rule: Rule, config: PolicyConfig) -> List[Finding]:
        signals = collect_intent_signals(text)
        score = intent_score(signals)
        if score < config.l2_threshold:
            return []
        names = [s['name'] for s in signals if s['weight'] > 0]
        return [Finding(
            category=rule.category,
            severity=score,
            detector_source=SOURCE_INTENT,
            rule_id=rule.id,
            evidence=",".join(names),
        )]


class MLProvider:
    """Wraps the transformer classifier; errors propagate to the router."""

    name = "ML"

    def __init__(self, classifier_factory: Optional[Callable[[], MLDefense]] = None,
                 model_name: Optional[str] = None):
        self._factory = classifier_factory or (lambda: get_classifier(model_name))

    def detect(self, text: str, rule: Rule, config: PolicyConfig) -> List[Finding]:
        probability = self._factory().injection_probability(text)
        if probability < config.l2_threshold:
            return []
        return [Finding(
            category=rule.category,
            severity=probability,
            detector_source=SOURCE_ML,
            rule_id=rule.id,
            evidence=f"p={probability:.4f}",
        )]


def heuristic_kind(rule: Rule) -> str:
    kind = str(rule.config.get("heuristic") or "").strip().upper()
    if kind in (KIND_REPETITION, KIND_INTENT):
        return kind
    if KIND_REPETITION in (rule.category or "").upper():
        return KIND_REPETITION
    return KIND_INTENT


class L2Detector:
    """Router over tier-two providers."""

    def __init__(self, provider: str = "HEURISTIC", ml_provider: Optional[MLProvider] = None):
        self.provider = (provider or "HEURISTIC").upper()
        self.heuristic = HeuristicProvider()
        self.ml = ml_provider or MLProvider()

    def detect(self, text: str, rule: Rule, config: PolicyConfig) -> List[Finding]:
        if not text:
            return []
        try:
            if heuristic_kind(rule) == KIND_REPETITION:
                return self.heuristic.detect_repetition(text, rule)
            return self._detect_intent(text, rule, config)
        except Exception as e:
            logger.warning(f"reason={L2_RULE_FAILED} rule={rule.id} error={e}")
            return []

    def _detect_intent(self, text: str, rule: Rule, config: PolicyConfig) -> List[Finding]:
        if self.provider in ("ML", "AUTO"):
            try:
                findings = self.ml.detect(text, rule, config)
            except Exception as e:
                logger.warning(f"L2 ML provider failed for rule {rule.id}, falling back to heuristic: {e}")
            else:
                if findings or self.provider == "ML":
                    return findings
        return self.heuristic.detect_intent(text, rule, config)
