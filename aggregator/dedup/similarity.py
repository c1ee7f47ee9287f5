from __future__ import annotations

import re

# Longer inputs are cut before computing edit distance (O(n*m) table).
MAX_COMPARE_LENGTH = 500

_NON_ALNUM_RE = re.compile(r"[^a-z0-9 ]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(text: str) -> str:
    """Lower-case, keep only [a-z0-9 ], collapse runs of whitespace."""
    lowered = _WHITESPACE_RE.sub(" ", text.lower())
    return _WHITESPACE_RE.sub(" ", _NON_ALNUM_RE.sub("", lowered)).strip()


def levenshtein_distance(a: str, b: str, max_length: int = MAX_COMPARE_LENGTH) -> int:
    """Classic edit distance over the first max_length characters of each string."""
    a = a[:max_length]
    b = b[:max_length]
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def similarity_score(a: str | None, b: str | None, max_length: int = MAX_COMPARE_LENGTH) -> int:
    """Title similarity on a 0-100 scale.

    Missing titles score 0. Titles that both normalize to the empty string
    score 100. The ratio uses the truncated lengths so that two long titles
    sharing their first max_length characters count as identical.
    """
    if not a or not b:
        return 0
    n1 = normalize_title(a)[:max_length]
    n2 = normalize_title(b)[:max_length]
    max_len = max(len(n1), len(n2))
    if max_len == 0:
        return 100
    distance = levenshtein_distance(n1, n2, max_length)
    # round-half-up of 100 * (1 - distance / max_len), in integer arithmetic
    return (200 * (max_len - distance) + max_len) // (2 * max_len)
