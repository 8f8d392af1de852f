# contentguard/engine/store.py
"""
In-memory policy repository.

Features:
- Policies, rules and policy-rule links (with priority)
- Policy versions (PUBLISHED / GRAY / DRAFT) and gray release tickets
- Allowlist entries with expiry
- Agent/scene bindings used when a request carries no policy id
- Thread-safe with a simple lock

Usage:
    store = InMemoryPolicyStore()
    store.add_policy(Policy(id=1, name="default"))
    store.add_rule(Rule(id=10, rule_type="REGEX", category="PII"))
    store.link_rule(policy_id=1, rule_id=10, priority=5)
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from contentguard.engine.exceptions import PolicyUnavailable
from contentguard.engine.models import AllowlistEntry, Rule

# Version statuses
VERSION_PUBLISHED = "PUBLISHED"
VERSION_GRAY = "GRAY"
VERSION_DRAFT = "DRAFT"


@dataclass
class Policy:
    id: int
    name: str
    enabled: bool = True
    default_action: Optional[str] = None
    config_json: Optional[str] = None


@dataclass
class RuleLink:
    """Binds a rule to a policy with an ordering priority."""
    policy_id: int
    rule_id: int
    priority: int = 0


@dataclass
class PolicyVersion:
    id: int
    policy_id: int
    version_no: int
    status: str = VERSION_DRAFT
    config_json: Optional[str] = None     # may wrap {"policyConfigJson": "..."}
    default_action: Optional[str] = None
    created_ts: float = field(default_factory=time.time)


@dataclass
class ReleaseTicket:
    """A gray release of one version; gray_ratio is in [0, 1]."""
    policy_id: int
    version_id: int
    gray_ratio: float
    created_ts: float = field(default_factory=time.time)


@dataclass
class Binding:
    agent_id: int
    policy_id: int
    scene: Optional[str] = None   # None = the agent's default binding
    enabled: bool = True


class InMemoryPolicyStore:
    """
    Thread-safe in-memory store backing the policy resolver and the pipeline.
    Reads return copies of internal lists, never the lists themselves.
    """

    def __init__(self):
        self._policies: Dict[int, Policy] = {}
        self._rules: Dict[int, Rule] = {}
        self._links: List[RuleLink] = []
        self._versions: Dict[int, PolicyVersion] = {}
        self._tickets: List[ReleaseTicket] = []
        self._allowlists: List[AllowlistEntry] = []
        self._bindings: List[Binding] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_policy(self, policy: Policy) -> Policy:
        with self._lock:
            self._policies[policy.id] = policy
        return policy

    def add_rule(self, rule: Rule) -> Rule:
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def link_rule(self, policy_id: int, rule_id: int, priority: int = 0) -> None:
        with self._lock:
            self._links = [
                link for link in self._links
                if not (link.policy_id == policy_id and link.rule_id == rule_id)
            ]
            self._links.append(RuleLink(policy_id, rule_id, priority))

    def add_version(self, version: PolicyVersion) -> PolicyVersion:
        with self._lock:
            if version.status == VERSION_PUBLISHED:
                # Only one published version per policy
                for other in self._versions.values():
                    if other.policy_id == version.policy_id and other.status == VERSION_PUBLISHED:
                        other.status = VERSION_DRAFT
            self._versions[version.id] = version
        return version

    def add_gray_ticket(self, ticket: ReleaseTicket) -> ReleaseTicket:
        with self._lock:
            self._tickets.append(ticket)
        return ticket

    def add_allowlist(self, entry: AllowlistEntry) -> AllowlistEntry:
        with self._lock:
            self._allowlists.append(entry)
        return entry

    def bind(self, binding: Binding) -> Binding:
        with self._lock:
            self._bindings.append(binding)
        return binding

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_policy(self, policy_id: int) -> Optional[Policy]:
        with self._lock:
            return self._policies.get(policy_id)

    def list_rule_links(self, policy_id: int) -> List[RuleLink]:
        """Links of a policy, priority descending then rule id ascending."""
        with self._lock:
            links = [link for link in self._links if link.policy_id == policy_id]
        return sorted(links, key=lambda link: (-link.priority, link.rule_id))

    def get_enabled_rules(self, rule_ids: List[int]) -> Dict[int, Rule]:
        with self._lock:
            return {
                rid: self._rules[rid]
                for rid in rule_ids
                if rid in self._rules and self._rules[rid].enabled
            }

    def find_published(self, policy_id: int) -> Optional[PolicyVersion]:
        with self._lock:
            published = [
                v for v in self._versions.values()
                if v.policy_id == policy_id and v.status == VERSION_PUBLISHED
            ]
        return max(published, key=lambda v: v.version_no) if published else None

    def find_latest_gray(self, policy_id: int) -> Optional[PolicyVersion]:
        with self._lock:
            gray = [
                v for v in self._versions.values()
                if v.policy_id == policy_id and v.status == VERSION_GRAY
            ]
        return max(gray, key=lambda v: v.version_no) if gray else None

    def find_latest_gray_ticket(self, policy_id: int, version_id: int) -> Optional[ReleaseTicket]:
        with self._lock:
            tickets = [
                t for t in self._tickets
                if t.policy_id == policy_id and t.version_id == version_id
            ]
        return max(tickets, key=lambda t: t.created_ts) if tickets else None

    def find_binding(self, agent_id: Optional[int], scene: Optional[str] = None) -> Binding:
        """Scene binding first, then the agent's default binding."""
        if agent_id is None:
            raise PolicyUnavailable("No agent id and no policy id supplied")
        with self._lock:
            candidates = [b for b in self._bindings if b.agent_id == agent_id and b.enabled]
        if scene:
            for binding in candidates:
                if binding.scene == scene:
                    return binding
        for binding in candidates:
            if binding.scene is None:
                return binding
        raise PolicyUnavailable(f"No policy binding for agent {agent_id} scene {scene!r}")

    def list_active_allowlists(self, now: Optional[datetime] = None) -> List[AllowlistEntry]:
        now = now or datetime.now()
        with self._lock:
            return [entry for entry in self._allowlists if entry.is_active(now)]
