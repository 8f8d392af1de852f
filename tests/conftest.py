# tests/conftest.py
"""
Shared fakes for the screening tests: a scripted chat model and store builders.
No network, no model downloads.
"""

import json
import threading
from typing import Any, Dict, List, Optional

import pytest

from contentguard.engine.config import Settings
from contentguard.engine.cost_context import get_context
from contentguard.engine.llm_client import ChatModel, StructuredReply
from contentguard.engine.models import Rule
from contentguard.engine.store import InMemoryPolicyStore, Policy


def findings_json(*findings: Dict[str, Any]) -> str:
    return json.dumps({"findings": list(findings)})


class FakeChatModel(ChatModel):
    """
    Scripted chat model. Each behaviour is one of:
      - a value returned as is (Reply for entity/agent, str for raw)
      - an Exception instance, raised
      - a callable, invoked with the call arguments
    None means the mode is not implemented by this model.
    """

    provider = "fake"

    def __init__(self, entity=None, raw=None, agent=None, provider: str = "fake"):
        self.provider = provider
        self._entity = entity
        self._raw = raw
        self._agent = agent
        self.calls: List[str] = []
        self.contexts: List[Any] = []
        self.prompts: List[tuple] = []
        self._lock = threading.Lock()

    def _play(self, mode: str, behaviour, *args):
        with self._lock:
            self.calls.append(mode)
            self.contexts.append(get_context())
            self.prompts.append(args[:2])
        if behaviour is None:
            raise NotImplementedError(mode)
        if isinstance(behaviour, Exception):
            raise behaviour
        if callable(behaviour):
            return behaviour(*args)
        return behaviour

    def call_for_entity(self, system, text, schema):
        return self._play("CHAT_ENTITY", self._entity, system, text, schema)

    def call(self, system, text):
        return self._play("RAW_JSON", self._raw, system, text)

    def call_agent(self, system, text, schema, max_turns=3, cancel=None):
        return self._play("AGENT_TOOL", self._agent, system, text, schema, max_turns, cancel)


def entity_reply(*findings: Dict[str, Any]) -> StructuredReply:
    return StructuredReply({"findings": list(findings)})


def build_store(
    rules: Optional[List[Rule]] = None,
    config: Optional[Dict[str, Any]] = None,
    policy_id: int = 1,
    store: Optional[InMemoryPolicyStore] = None,
) -> InMemoryPolicyStore:
    """One enabled policy with its rules linked at their own priority."""
    store = store or InMemoryPolicyStore()
    store.add_policy(Policy(
        id=policy_id,
        name=f"policy-{policy_id}",
        default_action="ALLOW",
        config_json=json.dumps(config or {}),
    ))
    for rule in rules or []:
        store.add_rule(rule)
        store.link_rule(policy_id, rule.id, rule.priority)
    return store


@pytest.fixture
def settings():
    return Settings(attempt_timeout_ms=2000, batch_timeout_ms=2000, max_rule_concurrency=4)


@pytest.fixture
def pii_rule():
    return Rule(id=10, rule_type="REGEX", category="PII", config_json='{"patternSet": "PII"}')


@pytest.fixture
def llm_rule():
    return Rule(id=30, rule_type="LLM", category="PROMPT_INJECTION",
                config_json='{"prompt": "Focus on instruction overrides."}')
