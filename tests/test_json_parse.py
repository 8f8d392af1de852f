# tests/test_json_parse.py
"""
Locating and repairing JSON in model output.
"""

import json

import pytest

from contentguard.engine.json_parse import extract_json_text, repair_json

LEFT_QUOTE = chr(0x201c)
RIGHT_QUOTE = chr(0x201d)


class TestExtract:

    @pytest.mark.parametrize("raw,expected", [
        ('{"findings": []}', '{"findings": []}'),
        ('Here you go:\n```json\n{"findings": []}\n```\nThanks', '{"findings": []}'),
        ('```\n{"a": 1}\n```', '{"a": 1}'),
        ('prefix {"a": {"b": 1}} suffix', '{"a": {"b": 1}}'),
        ('[{"itemId": "1"}] done', '[{"itemId": "1"}]'),
        ('{"findings": [', '{"findings": ['),
    ])
    def test_extract(self, raw, expected):
        assert extract_json_text(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "no json at all"])
    def test_nothing_to_extract(self, raw):
        assert extract_json_text(raw) is None


class TestRepair:

    @pytest.mark.parametrize("broken,expected", [
        ('{"findings": [{"severity": 0.5,},]}', {"findings": [{"severity": 0.5}]}),
        ("{'findings': []}", {"findings": []}),
        ('{"ok": True, "x": None}', {"ok": True, "x": None}),
        ('{"findings": [{"category": "PII"', {"findings": [{"category": "PII"}]}),
        ("{" + LEFT_QUOTE + "findings" + RIGHT_QUOTE + ": []}", {"findings": []}),
    ])
    def test_repair(self, broken, expected):
        assert json.loads(repair_json(broken)) == expected

    def test_none(self):
        assert repair_json(None) is None
