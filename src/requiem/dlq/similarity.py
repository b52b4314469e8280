"""Error-message similarity scoring for poison-pill detection.

Similarity is the normalized Levenshtein distance between two messages:
1.0 for identical strings, approaching 0.0 as they share nothing. Used only
to decide whether an entry keeps failing for the same reason.
"""

from __future__ import annotations

from collections.abc import Sequence
from itertools import combinations


def levenshtein_distance(a: str, b: str) -> int:
    """Minimum single-character edits (insert, delete, substitute) turning a into b.

    Uses two rolling rows over the shorter string, so extra space is
    O(min(len(a), len(b))).
    """
    if len(a) > len(b):
        a, b = b, a

    if not a:
        return len(b)

    previous_row = list(range(len(a) + 1))
    current_row = [0] * (len(a) + 1)

    for j, char_b in enumerate(b, start=1):
        current_row[0] = j
        for i, char_a in enumerate(a, start=1):
            cost = 0 if char_a == char_b else 1
            current_row[i] = min(
                previous_row[i] + 1,  # deletion
                current_row[i - 1] + 1,  # insertion
                previous_row[i - 1] + cost,  # substitution
            )
        previous_row, current_row = current_row, previous_row

    return previous_row[len(a)]


def string_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1]; two empty strings are identical."""
    max_length = max(len(a), len(b))
    if max_length == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_length


def calculate_error_similarity(messages: Sequence[str]) -> float:
    """Average pairwise similarity over every unordered pair of messages.

    Returns:
        Mean similarity in [0, 1], or 0.0 when fewer than two messages are given.
    """
    if len(messages) < 2:
        return 0.0

    scores = [string_similarity(a, b) for a, b in combinations(messages, 2)]
    return sum(scores) / len(scores)


__all__ = [
    "calculate_error_similarity",
    "levenshtein_distance",
    "string_similarity",
]
