# contentguard/engine/patterns.py
"""
Tier one: regex detection, driven by YAML pattern packs.

Built-in packs are loaded from data/patterns_regex.yml at first use and the
compiled patterns cached. A REGEX rule selects what to run through its
configJson:

    {"pattern": "..."}                 single custom regex
    {"patterns": ["...", "..."]}       several custom regexes
    {"patternSet": "PII"}              a built-in pack (default: rule category)
    {"severity": 0.9}                  overrides the pack severity

Usage:
    detector = RegexDetector()
    findings = detector.detect(text, rule)
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from contentguard.engine.config import DATA_DIR
from contentguard.engine.models import SOURCE_L1_REGEX, Finding, Rule

logger = logging.getLogger(__name__)

REGEX_PACK_FILE = "patterns_regex.yml"
DEFAULT_SEVERITY = 0.8
EVIDENCE_CHARS = 80


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, return empty dict if not found."""
    if not path.exists():
        logger.warning(f"Pattern file not found: {path}")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _compile_packs(config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Output:
        {PACK_NAME: {severity: float, patterns: [{id, compiled}, ...]}}
    Pack names are upper-cased so categories match regardless of case.
    """
    packs: Dict[str, Dict[str, Any]] = {}
    for pack_name, pack in config.items():
        if not isinstance(pack, dict):
            continue
        compiled = []
        for p in pack.get("patterns", []):
            if not isinstance(p, dict) or "regex" not in p:
                continue
            try:
                compiled.append({
                    "id": p.get("id", pack_name),
                    "compiled": re.compile(p["regex"], re.IGNORECASE),
                })
            except re.error as e:
                logger.warning(f"Invalid regex in pack {pack_name}: {p['regex']} - {e}")
        if compiled:
            packs[str(pack_name).upper()] = {
                "severity": float(pack.get("severity", DEFAULT_SEVERITY)),
                "patterns": compiled,
            }
    return packs


@lru_cache(maxsize=8)
def get_regex_packs(data_dir: str = str(DATA_DIR)) -> Dict[str, Dict[str, Any]]:
    """Load and cache the compiled built-in packs."""
    return _compile_packs(_load_yaml(Path(data_dir) / REGEX_PACK_FILE))


@lru_cache(maxsize=512)
def _compile_custom(regex: str) -> Optional[re.Pattern]:
    try:
        return re.compile(regex)
    except re.error as e:
        logger.warning(f"Skipping invalid rule regex {regex!r}: {e}")
        return None


def reload_patterns() -> None:
    """Force reload of patterns (useful for testing/hot-reload)."""
    get_regex_packs.cache_clear()
    _compile_custom.cache_clear()


class RegexDetector:
    """Deterministic tier-one detector. Never raises for bad rule config."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = str(data_dir or DATA_DIR)

    def pack_names(self) -> List[str]:
        return sorted(get_regex_packs(self.data_dir))

    def _resolve(self, rule: Rule) -> tuple:
        config = rule.config
        custom: List[str] = []
        if isinstance(config.get("pattern"), str) and config["pattern"]:
            custom.append(config["pattern"])
        if isinstance(config.get("patterns"), list):
            custom.extend(p for p in config["patterns"] if isinstance(p, str) and p)

        severity = config.get("severity")
        if custom:
            compiled = [c for c in (_compile_custom(r) for r in custom) if c is not None]
            return compiled, severity if severity is not None else DEFAULT_SEVERITY

        pack_name = str(config.get("patternSet") or rule.category or "").upper()
        pack = get_regex_packs(self.data_dir).get(pack_name)
        if pack is None:
            logger.debug(f"Rule {rule.id}: no regex pack named {pack_name!r}")
            return [], DEFAULT_SEVERITY
        compiled = [p["compiled"] for p in pack["patterns"]]
        return compiled, severity if severity is not None else pack["severity"]

    def detect(self, text: str, rule: Rule) -> List[Finding]:
        if not text:
            return []
        compiled, severity = self._resolve(rule)
        try:
            severity = min(max(float(severity), 0.0), 1.0)
        except (TypeError, ValueError):
            severity = DEFAULT_SEVERITY

        findings: List[Finding] = []
        seen = set()
        for pattern in compiled:
            for match in pattern.finditer(text):
                if match.end() <= match.start():
                    continue
                span = (match.start(), match.end())
                if span in seen:
                    continue
                seen.add(span)
                findings.append(Finding(
                    category=rule.category,
                    severity=severity,
                    start=span[0],
                    end=span[1],
                    detector_source=SOURCE_L1_REGEX,
                    rule_id=rule.id,
                    evidence=match.group()[:EVIDENCE_CHARS],
                ))
        return findings
