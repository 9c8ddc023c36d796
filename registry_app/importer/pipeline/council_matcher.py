"""
Resolve free-text council names to canonical councils.

Strategies run in strict precedence and the first hit wins:

1. exact  - normalized equality with a canonical council name
2. alias  - normalized equality with a registered alias
3. fuzzy  - token-level Monge-Elkan over Jaro-Winkler similarity
4. none   - left for an operator to map by hand

Fuzzy scoring down-weights designator words ("council", "district", ...)
so that "Koinadugu Distrct" is judged on "Koinadugu", not on how closely
the boilerplate is spelled. Ties within ``tie_margin`` are never resolved
automatically.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence

from rapidfuzz.distance import JaroWinkler

from registry_app.importer.errors import MatchAmbiguityError
from registry_app.importer.pipeline.hierarchy import CouncilHierarchyIndex, CouncilNode
from registry_app.models.geography import normalize_label
from registry_app.models.importer.schema import MatchType

DEFAULT_FUZZY_THRESHOLD = 0.85
DEFAULT_TIE_MARGIN = 0.01
DESIGNATOR_WEIGHT = 0.25
DESIGNATOR_SIMILARITY = 0.9
MAX_CANDIDATES = 3

COUNCIL_DESIGNATORS = frozenset(
    {"council", "city", "district", "municipal", "municipality", "town", "rural", "urban", "local"}
)

_TOKEN_RE = re.compile(r"[^\W_]+")


@dataclass(frozen=True, slots=True)
class MatchResult:
    match_type: MatchType
    council_id: int | None = None
    confidence: float | None = None
    alias_id: int | None = None
    candidates: tuple[dict, ...] = ()
    notes: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.match_type != MatchType.NONE


def tokenize(text: str | None) -> list[str]:
    return _TOKEN_RE.findall(normalize_label(text))


@lru_cache(maxsize=4096)
def is_designator(token: str) -> bool:
    """True for council boilerplate words and close misspellings of them."""

    if token in COUNCIL_DESIGNATORS:
        return True
    return any(
        JaroWinkler.normalized_similarity(token, designator) >= DESIGNATOR_SIMILARITY
        for designator in COUNCIL_DESIGNATORS
    )


def monge_elkan(query_tokens: Sequence[str], label_tokens: Sequence[str]) -> float:
    """Weighted mean, over query tokens, of the best Jaro-Winkler hit in the label."""

    if not query_tokens or not label_tokens:
        return 0.0
    total = 0.0
    weights = 0.0
    for token in query_tokens:
        weight = DESIGNATOR_WEIGHT if is_designator(token) else 1.0
        best = max(JaroWinkler.normalized_similarity(token, other) for other in label_tokens)
        total += weight * best
        weights += weight
    return float(total / weights) if weights else 0.0


def score_council(query_tokens: Sequence[str], council: CouncilNode) -> float:
    return max(monge_elkan(query_tokens, tokenize(label)) for label in council.labels)


class CouncilMatcher:
    """Stateless matcher over an immutable hierarchy snapshot; safe to share across threads."""

    def __init__(
        self,
        index: CouncilHierarchyIndex,
        *,
        threshold: float = DEFAULT_FUZZY_THRESHOLD,
        tie_margin: float = DEFAULT_TIE_MARGIN,
    ) -> None:
        self.index = index
        self.threshold = threshold
        self.tie_margin = tie_margin

    def match(
        self,
        council_text: str | None,
        *,
        district_hint: str | None = None,
        region_hint: str | None = None,
    ) -> MatchResult:
        normalized = normalize_label(council_text)
        if not normalized:
            return MatchResult(MatchType.NONE, notes="Council text is blank.")

        district_id = self.index.resolve_district(district_hint, region_text=region_hint)

        exact = self._match_exact(normalized, district_id)
        if exact is not None:
            return exact

        alias = self.index.alias_index.get(normalized)
        if alias is not None and alias.council_id in self.index.councils:
            return MatchResult(
                MatchType.ALIAS,
                council_id=alias.council_id,
                confidence=1.0,
                alias_id=alias.alias_id,
                notes=f"Matched alias '{alias.alias}'.",
            )

        try:
            return self._match_fuzzy(council_text or "", district_id)
        except MatchAmbiguityError as exc:
            return MatchResult(MatchType.NONE, candidates=tuple(exc.candidates), notes=exc.message)

    def _match_exact(self, normalized: str, district_id: int | None) -> MatchResult | None:
        ids = self.index.council_ids_by_name.get(normalized, ())
        notes = None
        if district_id is not None:
            scoped = tuple(council_id for council_id in ids if self.index.councils[council_id].district_id == district_id)
            if scoped:
                ids = scoped
            elif ids:
                # canonical text outranks a district hint that disagrees with it
                notes = "Council name matched outside the hinted district."
        if not ids:
            return None
        if len(ids) > 1:
            candidates = tuple({**self.index.describe(council_id), "score": 1.0} for council_id in ids)
            return MatchResult(
                MatchType.NONE,
                candidates=candidates[:MAX_CANDIDATES],
                notes="Council name matches more than one council; choose one manually.",
            )
        return MatchResult(MatchType.EXACT, council_id=ids[0], confidence=1.0, notes=notes)

    def rank(self, council_text: str, district_id: int | None = None) -> list[dict]:
        """Score every council in scope, best first; ties break on council id."""

        query_tokens = tokenize(council_text)
        if not query_tokens or all(is_designator(token) for token in query_tokens):
            return []
        scored = [
            (score_council(query_tokens, council), council.id) for council in self.index.councils_in_scope(district_id)
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [{**self.index.describe(council_id), "score": round(score, 4)} for score, council_id in scored]

    def _match_fuzzy(self, council_text: str, district_id: int | None) -> MatchResult:
        ranked = self.rank(council_text, district_id)
        candidates = tuple(ranked[:MAX_CANDIDATES])
        if not ranked:
            return MatchResult(MatchType.NONE, notes="No council candidates to compare against.")

        best = ranked[0]
        if best["score"] < self.threshold:
            return MatchResult(
                MatchType.NONE,
                candidates=candidates,
                notes=f"Best candidate scored {best['score']:.2f}, below the {self.threshold:.2f} threshold.",
            )
        if len(ranked) > 1 and best["score"] - ranked[1]["score"] <= self.tie_margin:
            tied = [item for item in ranked if best["score"] - item["score"] <= self.tie_margin]
            raise MatchAmbiguityError(council_text, tied[:MAX_CANDIDATES])
        return MatchResult(
            MatchType.FUZZY,
            council_id=best["councilId"],
            confidence=best["score"],
            candidates=candidates,
        )


__all__ = [
    "COUNCIL_DESIGNATORS",
    "CouncilMatcher",
    "MatchResult",
    "is_designator",
    "monge_elkan",
    "score_council",
    "tokenize",
]
