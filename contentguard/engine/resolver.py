"""
Policy snapshot resolution with gray-release routing.

resolve(policy_id, route_key) builds an immutable PolicySnapshot. With
governance off the policy's live definition is used. With governance on, the
published version and the latest gray version compete: a caller lands on the
gray version iff bucket(policy_id, route_key) < round_half_up(ratio * 10000).
The bucket is a stable digest, so one caller always sees the same branch.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional

from contentguard.engine.exceptions import PolicyUnavailable
from contentguard.engine.logging_config import log_event
from contentguard.engine.models import PolicyConfig, PolicySnapshot, Rule, parse_json_object
from contentguard.engine.store import InMemoryPolicyStore, Policy, PolicyVersion

logger = logging.getLogger(__name__)

BUCKET_COUNT = 10000


def gray_bucket(policy_id: int, route_key: str) -> int:
    """Deterministic bucket in [0, 10000) for a (policy, caller) pair."""
    digest = hashlib.sha256(f"{policy_id}:{route_key}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % BUCKET_COUNT


def gray_threshold(gray_ratio: float) -> int:
    """ratio * 10000 rounded half-up, e.g. 0.00005 -> 1."""
    try:
        scaled = Decimal(str(gray_ratio)) * BUCKET_COUNT
    except (InvalidOperation, ValueError):
        return 0
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def should_route_to_gray(policy_id: int, route_key: Optional[str], gray_ratio: float) -> bool:
    if route_key is None or not route_key.strip():
        return False
    threshold = gray_threshold(gray_ratio)
    if threshold <= 0:
        return False
    if threshold >= BUCKET_COUNT:
        return True
    return gray_bucket(policy_id, route_key) < threshold


class PolicySnapshotResolver:
    """Resolves a fresh snapshot per call; nothing is cached by identity."""

    def __init__(self, store: InMemoryPolicyStore, governance_enabled: bool = False):
        self.store = store
        self.governance_enabled = governance_enabled

    def resolve(self, policy_id: int, route_key: Optional[str] = None) -> PolicySnapshot:
        policy = self._require_policy(policy_id)
        version = self._effective_version(policy_id, route_key)
        rules = self._ordered_rules(policy_id)

        if version is None:
            return PolicySnapshot(
                policy_id=policy.id,
                name=policy.name,
                default_action=policy.default_action,
                config=PolicyConfig.from_json(policy.config_json),
                rules=tuple(rules),
            )

        return PolicySnapshot(
            policy_id=policy.id,
            name=policy.name,
            default_action=version.default_action or policy.default_action,
            config=self._version_config(version, policy),
            rules=tuple(rules),
            version_id=version.id,
            version_no=version.version_no,
        )

    def _require_policy(self, policy_id: int) -> Policy:
        policy = self.store.get_policy(policy_id)
        if policy is None or not policy.enabled:
            raise PolicyUnavailable(f"Policy {policy_id} is missing or disabled")
        return policy

    def _ordered_rules(self, policy_id: int) -> List[Rule]:
        links = self.store.list_rule_links(policy_id)
        rules = self.store.get_enabled_rules([link.rule_id for link in links])
        ordered = []
        for link in links:
            rule = rules.get(link.rule_id)
            if rule is not None:
                ordered.append(replace(rule, priority=link.priority))
        return ordered

    def _effective_version(self, policy_id: int, route_key: Optional[str]) -> Optional[PolicyVersion]:
        if not self.governance_enabled:
            return None
        published = self.store.find_published(policy_id)
        gray = self.store.find_latest_gray(policy_id)
        if gray is None:
            return published
        if published is None:
            return gray

        ratio = self._gray_ratio(policy_id, gray.id)
        if ratio <= 0:
            return published
        to_gray = should_route_to_gray(policy_id, route_key, ratio)
        log_event(logger, "GRAY_ROUTE", level=logging.DEBUG, policyId=policy_id,
                  grayVersion=gray.version_no, ratio=ratio, routedToGray=to_gray)
        return gray if to_gray else published

    def _gray_ratio(self, policy_id: int, version_id: int) -> float:
        ticket = self.store.find_latest_gray_ticket(policy_id, version_id)
        if ticket is None or ticket.gray_ratio is None:
            return 0.0
        return float(ticket.gray_ratio)

    def _version_config(self, version: PolicyVersion, policy: Policy) -> PolicyConfig:
        wrapper = parse_json_object(version.config_json, f"policy {policy.id} version config")
        inner = wrapper.get("policyConfigJson")
        if isinstance(inner, str) and inner.strip():
            return PolicyConfig.from_json(inner)
        if isinstance(inner, dict):
            return PolicyConfig.from_dict(inner)
        return PolicyConfig.from_json(policy.config_json)
