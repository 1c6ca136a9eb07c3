"""
Fuzzy categorical matching against a previously observed vocabulary.

Resolution order, first tier with a candidate wins:
    1. exact        - verbatim, then after normalize()
    2. normalized   - after normalize_and_map_country()
    3. token-intersection(n) - most shared tokens, earliest entry on ties
    4. levenshtein(d) - closest entry if d / longer length <= threshold
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from ml_config import MATCH_DISTANCE_THRESHOLD, MATCH_SUGGESTIONS
from text_utils import normalize, normalize_and_map_country, tokenize


@dataclass
class MatchResult:
    index: int
    matched_value: Optional[str] = None
    method: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    @property
    def matched(self):
        return self.index != -1


class FuzzyMatcher:
    def __init__(self, threshold=MATCH_DISTANCE_THRESHOLD, n_suggestions=MATCH_SUGGESTIONS):
        self.threshold = threshold
        self.n_suggestions = n_suggestions

    def encode(self, vocabulary: Sequence[str], raw_value) -> MatchResult:
        candidates = list(vocabulary or [])
        if not candidates:
            return MatchResult(index=-1)

        raw = "" if raw_value is None else str(raw_value)

        # 1. Exact
        for i, cand in enumerate(candidates):
            if cand == raw:
                return MatchResult(i, cand, "exact")
        plain = normalize(raw)
        for i, cand in enumerate(candidates):
            if normalize(cand) == plain:
                return MatchResult(i, cand, "exact")

        # 2. Normalized + country aliases
        query = normalize_and_map_country(raw)
        mapped = [normalize_and_map_country(c) for c in candidates]
        for i, cand in enumerate(mapped):
            if cand == query:
                return MatchResult(i, candidates[i], "normalized")

        # 3. Token intersection
        query_tokens = set(tokenize(query))
        if query_tokens:
            best_idx, best_score = -1, 0
            for i, cand in enumerate(mapped):
                score = len(query_tokens.intersection(tokenize(cand)))
                if score > best_score:
                    best_idx, best_score = i, score
            if best_score > 0:
                return MatchResult(best_idx, candidates[best_idx], f"token-intersection({best_score})")

        # 4. Levenshtein fallback
        distances = [(Levenshtein.distance(query, cand), i) for i, cand in enumerate(mapped)]
        ranked = sorted(distances)  # ties keep vocabulary order
        best_dist, best_idx = ranked[0]
        length = max(len(query), len(mapped[best_idx]), 1)
        if best_dist / length <= self.threshold:
            return MatchResult(best_idx, candidates[best_idx], f"levenshtein({best_dist})")

        suggestions = [candidates[i] for _, i in ranked[:self.n_suggestions]]
        return MatchResult(index=-1, suggestions=suggestions)
