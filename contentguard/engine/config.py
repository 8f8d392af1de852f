# contentguard/engine/config.py
"""
Process-level settings for the screening pipeline.

Values come from the environment (a local .env is honoured through
python-dotenv). Policy-level thresholds live on PolicyConfig, not here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent.parent.parent / "data"

# Extraction modes
MODE_CHAT_ENTITY = "CHAT_ENTITY"
MODE_RAW_JSON = "RAW_JSON"
MODE_AGENT_TOOL = "AGENT_TOOL"

STRATEGY_PRESETS: Dict[str, Tuple[str, ...]] = {
    "FAST": (MODE_CHAT_ENTITY, MODE_RAW_JSON),
    "BALANCED": (MODE_CHAT_ENTITY, MODE_RAW_JSON, MODE_AGENT_TOOL),
    "ROBUST": (MODE_CHAT_ENTITY, MODE_AGENT_TOOL, MODE_RAW_JSON),
}
DEFAULT_STRATEGY = "BALANCED"

L2_PROVIDERS = ("HEURISTIC", "ML", "AUTO")

MIN_BATCH_TEXT_LENGTH = 32
MIN_BATCH_PROMPT_CHARS = 512


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        return default


@dataclass
class Settings:
    """Runtime knobs. Construct directly in tests, from_env() everywhere else."""
    log_level: str = "INFO"
    policy_governance_enabled: bool = False

    l3_strategy: str = DEFAULT_STRATEGY
    attempt_timeout_ms: int = 15000
    batch_timeout_ms: int = 30000
    batch_max_text_length: int = 2000
    batch_max_prompt_chars: int = 24000
    max_rule_concurrency: int = 4
    rule_timeout_ms: int = 0
    enable_chat_entity: bool = True
    enable_raw_json: bool = True
    enable_agent_tool: bool = True
    agent_max_turns: int = 3
    batch_enabled: bool = True
    provider_capability_ttl_ms: int = 600000

    llm_provider: str = "gemini"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"

    l2_provider: str = "HEURISTIC"
    l2_ml_model: str = "protectai/deberta-v3-base-prompt-injection-v2"

    patterns_dir: Path = field(default_factory=lambda: DATA_DIR)

    def __post_init__(self):
        strategy = (self.l3_strategy or "").strip().upper()
        if strategy not in STRATEGY_PRESETS:
            if strategy:
                logger.warning(f"Unknown L3 strategy {self.l3_strategy!r}; using {DEFAULT_STRATEGY}")
            strategy = DEFAULT_STRATEGY
        self.l3_strategy = strategy

        self.attempt_timeout_ms = max(0, self.attempt_timeout_ms)
        self.batch_timeout_ms = max(0, self.batch_timeout_ms)
        self.rule_timeout_ms = max(0, self.rule_timeout_ms)
        self.provider_capability_ttl_ms = max(0, self.provider_capability_ttl_ms)
        self.batch_max_text_length = max(MIN_BATCH_TEXT_LENGTH, self.batch_max_text_length)
        self.batch_max_prompt_chars = max(MIN_BATCH_PROMPT_CHARS, self.batch_max_prompt_chars)
        self.max_rule_concurrency = max(1, self.max_rule_concurrency)
        self.agent_max_turns = max(1, self.agent_max_turns)

        provider = (self.l2_provider or "").strip().upper()
        self.l2_provider = provider if provider in L2_PROVIDERS else "HEURISTIC"
        self.llm_provider = (self.llm_provider or "gemini").strip().lower()
        self.patterns_dir = Path(self.patterns_dir)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            policy_governance_enabled=_env_bool("POLICY_GOVERNANCE_ENABLED", False),
            l3_strategy=os.getenv("L3_STRATEGY", DEFAULT_STRATEGY),
            attempt_timeout_ms=_env_int("L3_ATTEMPT_TIMEOUT_MS", 15000),
            batch_timeout_ms=_env_int("L3_BATCH_TIMEOUT_MS", 30000),
            batch_max_text_length=_env_int("L3_BATCH_MAX_TEXT_LENGTH", 2000),
            batch_max_prompt_chars=_env_int("L3_BATCH_MAX_PROMPT_CHARS", 24000),
            max_rule_concurrency=_env_int("L3_MAX_RULE_CONCURRENCY", 4),
            rule_timeout_ms=_env_int("L3_RULE_TIMEOUT_MS", 0),
            enable_chat_entity=_env_bool("L3_ENABLE_CHAT_ENTITY", True),
            enable_raw_json=_env_bool("L3_ENABLE_RAW_JSON", True),
            enable_agent_tool=_env_bool("L3_ENABLE_AGENT_TOOL", True),
            agent_max_turns=_env_int("L3_AGENT_MAX_TURNS", 3),
            batch_enabled=_env_bool("L3_BATCH_ENABLED", True),
            provider_capability_ttl_ms=_env_int("PROVIDER_CAPABILITY_TTL_MS", 600000),
            llm_provider=os.getenv("LLM_PROVIDER", "gemini"),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            l2_provider=os.getenv("L2_PROVIDER", "HEURISTIC"),
            l2_ml_model=os.getenv("L2_ML_MODEL", "protectai/deberta-v3-base-prompt-injection-v2"),
            patterns_dir=Path(os.getenv("PATTERNS_DIR") or DATA_DIR),
        )

    def enabled_modes(self) -> List[str]:
        modes = []
        if self.enable_chat_entity:
            modes.append(MODE_CHAT_ENTITY)
        if self.enable_raw_json:
            modes.append(MODE_RAW_JSON)
        if self.enable_agent_tool:
            modes.append(MODE_AGENT_TOOL)
        return modes

    def strategy_chain(self) -> Tuple[str, ...]:
        return STRATEGY_PRESETS[self.l3_strategy]
