"""
Approximate token sizing.

Every budgeting decision goes through approx_tokens(). It is deliberately
cheap and deliberately inexact: roughly 4 characters per token for Latin
text, one token per CJK character, one per punctuation symbol.
"""

import math
import re

# CJK ideographs, kana, hangul
_CJK = r"぀-ヿ㐀-䶿一-鿿가-힯豈-﫿"
_TOKEN_RE = re.compile(rf"([{_CJK}])|([^\W{_CJK}]+)|([^\w\s])")

CHARS_PER_TOKEN = 4


def approx_tokens(text: str | None) -> int:
    """Rough token estimate for `text`. Empty or None is 0."""
    if not text:
        return 0
    total = 0
    for cjk, word, punct in _TOKEN_RE.findall(text):
        if cjk or punct:
            total += 1
        else:
            total += math.ceil(len(word) / CHARS_PER_TOKEN)
    return total
