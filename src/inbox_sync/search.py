"""
Fuzzy name matching for the conversation search box.

A candidate matches when every pattern character appears in it in order
(case-insensitive). Runs of consecutive matches score higher.
"""

from typing import Iterable, Optional


def fuzzy_score(pattern: str, candidate: str) -> Optional[int]:
    pattern = pattern.lower()
    if not pattern:
        return 0
    score = 0
    streak = 0
    idx = 0
    for ch in candidate.lower():
        if idx < len(pattern) and ch == pattern[idx]:
            idx += 1
            streak = 1 + streak * 2
            score += streak
        else:
            streak = 0
    return score if idx == len(pattern) else None


def fuzzy_filter(pattern: str, candidates: Iterable[str]) -> list[str]:
    """Matching candidates, best score first; ties keep their input order."""
    scored = []
    for index, candidate in enumerate(candidates):
        score = fuzzy_score(pattern, candidate)
        if score is not None:
            scored.append((-score, index, candidate))
    return [candidate for _, _, candidate in sorted(scored)]
