# tests/test_allowlist.py
"""
Allowlist matching, scoping and expiry.
"""

from datetime import datetime, timedelta

import pytest

from contentguard.engine.allowlist import filter_findings
from contentguard.engine.models import AllowlistEntry, Finding
from contentguard.engine.store import InMemoryPolicyStore

TEXT = "contact 13800138000 or ops@example.com"
PHONE = Finding(category="PII", severity=0.95, start=8, end=19, detector_source="L1_REGEX")
EMAIL = Finding(category="PII", severity=0.95, start=23, end=38, detector_source="L1_REGEX")
WHOLE = Finding(category="PROMPT_INJECTION", severity=0.9, detector_source="L3_LLM")


class TestMatching:

    @pytest.mark.parametrize("entry,survivors", [
        (AllowlistEntry(type="EXACT", value="13800138000"), [EMAIL, WHOLE]),
        (AllowlistEntry(type="EXACT", value="1380013800"), [PHONE, EMAIL, WHOLE]),
        (AllowlistEntry(type="CONTAINS", value="@example.com"), [PHONE, WHOLE]),
        (AllowlistEntry(type="REGEX", value=r"\w+@example\.com"), [PHONE, WHOLE]),
        (AllowlistEntry(type="REGEX", value=r"example"), [PHONE, EMAIL, WHOLE]),
        (AllowlistEntry(type="CATEGORY", value="prompt_injection"), [PHONE, EMAIL]),
        (AllowlistEntry(type="CATEGORY", value="PII"), [WHOLE]),
    ])
    def test_entry_types(self, entry, survivors):
        kept = filter_findings([PHONE, EMAIL, WHOLE], [entry], TEXT)
        assert kept == survivors, f"FAILED: {entry.type}:{entry.value} kept {[f.start for f in kept]}"

    def test_entry_category_narrows_match(self):
        entry = AllowlistEntry(type="CONTAINS", value="138", category="SECRETS")
        assert filter_findings([PHONE], [entry], TEXT) == [PHONE]

    def test_invalid_regex_matches_nothing(self):
        entry = AllowlistEntry(type="REGEX", value="(broken")
        assert filter_findings([PHONE], [entry], TEXT) == [PHONE]

    def test_disabled_entry_is_ignored(self):
        entry = AllowlistEntry(type="CATEGORY", value="PII", enabled=False)
        assert filter_findings([PHONE], [entry], TEXT) == [PHONE]


class TestScope:

    @pytest.mark.parametrize("scope,scope_id,suppressed", [
        ("GLOBAL", None, True),
        ("POLICY", 1, True),
        ("POLICY", 2, False),
        ("AGENT", 7, True),
        ("AGENT", 8, False),
    ])
    def test_scope(self, scope, scope_id, suppressed):
        entry = AllowlistEntry(type="CATEGORY", value="PII", scope=scope, scope_id=scope_id)
        kept = filter_findings([PHONE], [entry], TEXT, policy_id=1, agent_id=7)
        assert (kept == []) is suppressed


class TestExpiry:

    def test_store_lists_only_active_entries(self):
        now = datetime(2026, 1, 1, 12, 0, 0)
        store = InMemoryPolicyStore()
        store.add_allowlist(AllowlistEntry(type="CATEGORY", value="A", id=1))
        store.add_allowlist(AllowlistEntry(type="CATEGORY", value="B", id=2, expire_time=now + timedelta(days=1)))
        store.add_allowlist(AllowlistEntry(type="CATEGORY", value="C", id=3, expire_time=now - timedelta(seconds=1)))
        store.add_allowlist(AllowlistEntry(type="CATEGORY", value="D", id=4, enabled=False))
        assert [e.id for e in store.list_active_allowlists(now)] == [1, 2]
