# contentguard/engine/normalize.py
"""
Deobfuscation before detection.

Removes zero-width / control / bidi characters, maps exotic whitespace to a
plain space and folds homoglyphs (Cyrillic, Greek, fullwidth, mathematical
alphanumerics) to ASCII. Every output character remembers the index of the
original character it came from, so spans found on the normalized text can be
mapped back and redaction always happens on the caller's original text.
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from confusable_homoglyphs import confusables

logger = logging.getLogger(__name__)

ZERO_WIDTH_CHARS = frozenset([
    '\u200b', '\u200c', '\u200d', '\u2060', '\ufeff', '\u00ad', '\u034f',
    '\u061c', '\u115f', '\u1160', '\u17b4', '\u17b5', '\u180e',
])

# C0 controls except tab/newline/carriage return, plus DEL
CONTROL_CHARS = frozenset(
    [chr(c) for c in range(0x00, 0x20) if chr(c) not in '\t\n\r'] + ['\x7f']
)

BIDI_CONTROL_CHARS = frozenset([
    '\u200e', '\u200f',
    '\u202a', '\u202b', '\u202c', '\u202d', '\u202e',
    '\u2066', '\u2067', '\u2068', '\u2069',
])

UNICODE_WHITESPACE = frozenset([
    '\t', '\u00a0', '\u1680',
    '\u2000', '\u2001', '\u2002', '\u2003', '\u2004', '\u2005',
    '\u2006', '\u2007', '\u2008', '\u2009', '\u200a',
    '\u2028', '\u2029', '\u202f', '\u205f', '\u3000',
])

CHARS_TO_REMOVE = ZERO_WIDTH_CHARS | CONTROL_CHARS | BIDI_CONTROL_CHARS

# Homoglyphs that NFKC leaves alone
HOMOGLYPHS: Dict[str, str] = {
    # Cyrillic
    '\u0430': 'a', '\u0435': 'e', '\u043e': 'o', '\u0440': 'p', '\u0441': 'c',
    '\u0443': 'y', '\u0445': 'x', '\u0456': 'i', '\u0458': 'j', '\u04cf': 'l',
    '\u0455': 's', '\u0410': 'A', '\u0412': 'B', '\u0415': 'E', '\u041a': 'K',
    '\u041c': 'M', '\u041d': 'H', '\u041e': 'O', '\u0420': 'P', '\u0421': 'C',
    '\u0422': 'T', '\u0425': 'X', '\u0406': 'I', '\u0408': 'J', '\u0405': 'S',
    # Greek
    '\u03b1': 'a', '\u03b5': 'e', '\u03bf': 'o', '\u03c1': 'p', '\u03c5': 'u',
    '\u03b9': 'i', '\u03ba': 'k', '\u03bd': 'v', '\u0391': 'A', '\u0392': 'B',
    '\u0395': 'E', '\u0396': 'Z', '\u0397': 'H', '\u0399': 'I', '\u039a': 'K',
    '\u039c': 'M', '\u039d': 'N', '\u039f': 'O', '\u03a1': 'P', '\u03a4': 'T',
    '\u03a5': 'Y', '\u03a7': 'X',
}


def _math_alphanumerics() -> Dict[str, str]:
    """U+1D400..U+1D6A3 letter blocks (52 each) and U+1D7CE..U+1D7FF digits."""
    mapping: Dict[str, str] = {}
    letters = [chr(c) for c in range(ord('A'), ord('Z') + 1)] + \
              [chr(c) for c in range(ord('a'), ord('z') + 1)]
    for block_start in range(0x1D400, 0x1D6A4, 52):
        for offset, letter in enumerate(letters):
            cp = block_start + offset
            if cp < 0x1D6A4:
                mapping[chr(cp)] = letter
    for cp in range(0x1D7CE, 0x1D800):
        mapping[chr(cp)] = str((cp - 0x1D7CE) % 10)
    return mapping


FOLD_MAP: Dict[str, str] = {**HOMOGLYPHS, **_math_alphanumerics()}


@dataclass
class NormalizedText:
    """Normalized text plus, for each output index, the original index."""
    original: str
    text: str
    index_map: List[int] = field(default_factory=list)
    removed_count: int = 0
    folded_count: int = 0
    confusables_detected: bool = False

    @property
    def changed(self) -> bool:
        return self.text != self.original

    def to_original_span(self, start: int, end: int) -> Optional[Tuple[int, int]]:
        """Map [start, end) on the normalized text to the original text."""
        if not (0 <= start < end <= len(self.text)):
            return None
        if not self.changed:
            return start, end
        return self.index_map[start], self.index_map[end - 1] + 1


def _fold_char(char: str) -> str:
    if char in FOLD_MAP:
        return FOLD_MAP[char]
    folded = unicodedata.normalize('NFKC', char)
    # NFKC may expand one character (e.g. a ligature) into several
    return ''.join(FOLD_MAP.get(c, c) for c in folded)


def _is_dangerous_mix(text: str) -> bool:
    try:
        return bool(confusables.is_dangerous(text, preferred_aliases=['latin']))
    except (KeyError, ValueError) as e:
        logger.debug(f"confusable check skipped: {e}")
        return False


def normalize_text(text: str) -> NormalizedText:
    """
    Pipeline:
    1. Drop zero-width, control and bidi characters
    2. Map Unicode whitespace to ' '
    3. Fold homoglyphs / NFKC compatibility forms to ASCII
    """
    if not text:
        return NormalizedText(original=text or "", text=text or "")

    out: List[str] = []
    index_map: List[int] = []
    removed = 0
    folded = 0

    for i, char in enumerate(text):
        if char in CHARS_TO_REMOVE:
            removed += 1
            continue
        if char in UNICODE_WHITESPACE:
            out.append(' ')
            index_map.append(i)
            continue
        replacement = _fold_char(char)
        if replacement != char:
            folded += 1
        for c in replacement:
            out.append(c)
            index_map.append(i)

    return NormalizedText(
        original=text,
        text=''.join(out),
        index_map=index_map,
        removed_count=removed,
        folded_count=folded,
        confusables_detected=_is_dangerous_mix(text),
    )
