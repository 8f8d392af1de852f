# contentguard/engine/json_parse.py
"""
Helpers for pulling JSON out of free-form model output.

extract_json_text() finds the payload (inside a ```json fence if present,
otherwise the outermost {...} or [...]). repair_json() applies best-effort
fixes for the usual model mistakes. Neither raises.
"""

import re
from typing import Optional

_FENCE = re.compile(r'```(?:json|JSON)?\s*(.*?)```', re.S)
_TRAILING_COMMA = re.compile(r',\s*([}\]])')
_SINGLE_QUOTED = re.compile(r"'((?:[^'\\\n]|\\.)*)'")
_PY_LITERALS = [
    (re.compile(r'\bTrue\b'), 'true'),
    (re.compile(r'\bFalse\b'), 'false'),
    (re.compile(r'\bNone\b'), 'null'),
]
_SMART_QUOTES = {
    '\u201c': '"', '\u201d': '"', '\u2018': "'", '\u2019': "'",
}


def _outermost(text: str) -> Optional[str]:
    starts = [i for i in (text.find('{'), text.find('[')) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    closer = '}' if text[start] == '{' else ']'
    end = text.rfind(closer)
    if end <= start:
        # Unterminated; hand the tail to repair_json
        return text[start:]
    return text[start:end + 1]


def extract_json_text(raw: Optional[str]) -> Optional[str]:
    """Locate the JSON payload in raw model output, or None."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    fence = _FENCE.search(text)
    if fence:
        inner = fence.group(1).strip()
        if inner:
            return _outermost(inner) or inner
    return _outermost(text)


def _balance(text: str) -> str:
    """Append closers for brackets left open (ignores brackets inside strings)."""
    stack = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]' and stack and stack[-1] == ch:
            stack.pop()
    if in_string:
        text += '"'
    return text + ''.join(reversed(stack))


def repair_json(text: Optional[str]) -> Optional[str]:
    """Best-effort fixes: smart quotes, Python literals, single quotes, trailing commas, open brackets."""
    if text is None:
        return None
    fixed = text.strip()
    for smart, plain in _SMART_QUOTES.items():
        fixed = fixed.replace(smart, plain)
    if '"' not in fixed and "'" in fixed:
        fixed = _SINGLE_QUOTED.sub(lambda m: '"' + m.group(1).replace('"', '\\"') + '"', fixed)
    for pattern, literal in _PY_LITERALS:
        fixed = pattern.sub(literal, fixed)
    fixed = _balance(fixed)
    fixed = _TRAILING_COMMA.sub(r'\1', fixed)
    return fixed
