# =========================================
# 📄 File: pedx/enrichment/scoring.py
# Purpose: Pick the best GeoNames candidate for a city name and turn it into
#          City column values
# =========================================
"""
score = 100 * name_similarity + feature_bonus

name_similarity is the max over an ordered chain of strategies, each in [0, 1]:
  exact (case-insensitive)        1.0
  folded key equality             0.9   ("Asunción" vs "Asuncion")
  containment either way          0.5
  Levenshtein similarity * 0.3

Only candidates scoring above `min_score` are accepted. Ties keep the earliest
candidate, i.e. the service's own relevance order.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from pedx.enrichment.country_codes import continent_for, to_iso3
from pedx.etl.city_registry import fold

DEFAULT_MIN_SCORE = 30

FEATURE_BONUS = {
    "PPLC": 20,   # capital
    "PPLA": 20,   # first-order admin seat
    "PPLA2": 15,  # second-order admin seat
}
POPULATED_PLACE_BONUS = 10


def _norm(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def exact_match(original: str, candidate: str) -> float:
    a, b = _norm(original), _norm(candidate)
    return 1.0 if a and a == b else 0.0


def folded_match(original: str, candidate: str) -> float:
    a, b = fold(original), fold(candidate)
    return 0.9 if a and a == b else 0.0


def contains_match(original: str, candidate: str) -> float:
    a, b = _norm(original), _norm(candidate)
    if not a or not b:
        return 0.0
    return 0.5 if a in b or b in a else 0.0


def edit_similarity(original: str, candidate: str) -> float:
    return Levenshtein.normalized_similarity(_norm(original), _norm(candidate)) * 0.3


STRATEGIES: Tuple[Callable[[str, str], float], ...] = (
    exact_match,
    folded_match,
    contains_match,
    edit_similarity,
)


def name_similarity(original: str, candidate: str) -> float:
    return max(strategy(original, candidate) for strategy in STRATEGIES)


def feature_code(candidate: Dict[str, Any]) -> str:
    """`fcode` without a leading feature-class prefix ("P.PPLA" -> "PPLA")."""
    code = (candidate.get("fcode") or "").strip().upper()
    return code.split(".", 1)[1] if "." in code else code


def is_populated_place(candidate: Dict[str, Any]) -> bool:
    return candidate.get("fcl") == "P" or feature_code(candidate).startswith("PPL")


def feature_bonus(candidate: Dict[str, Any]) -> int:
    code = feature_code(candidate)
    if code in FEATURE_BONUS:
        return FEATURE_BONUS[code]
    if code.startswith("PPL"):
        return POPULATED_PLACE_BONUS
    return 0


def score_candidate(candidate: Dict[str, Any], original_name: str) -> float:
    return 100 * name_similarity(original_name, candidate.get("name") or "") + feature_bonus(candidate)


def score_and_select(candidates: Sequence[Dict[str, Any]], original_name: str,
                     min_score: float = DEFAULT_MIN_SCORE) -> Optional[Dict[str, Any]]:
    """
    Best candidate or None. Populated places are preferred: when any are present
    the administrative areas are dropped before scoring.
    """
    if not candidates:
        return None
    places = [c for c in candidates if is_populated_place(c)]
    pool: List[Dict[str, Any]] = places or list(candidates)

    best, best_score = None, None
    for candidate in pool:
        score = score_candidate(candidate, original_name)
        # strict ">" keeps the earliest of equal scores
        if best_score is None or score > best_score:
            best, best_score = candidate, score

    if best_score is None or best_score <= min_score:
        return None
    return best


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def candidate_fields(candidate: Dict[str, Any]) -> Dict[str, Any]:
    """City column values carried by a GeoNames candidate (None where absent)."""
    iso3 = to_iso3(candidate.get("countryCode"))
    population = candidate.get("population")
    try:
        population = int(population) if population not in (None, "", 0, "0") else None
    except (TypeError, ValueError):
        population = None
    return {
        "name": candidate.get("name"),
        "state": candidate.get("adminName1") or None,
        "country": candidate.get("countryName") or None,
        "iso3": iso3,
        "continent": continent_for(iso3, candidate.get("continentCode")),
        "latitude": _to_float(candidate.get("lat")),
        "longitude": _to_float(candidate.get("lng")),
        "population_city": population,
    }
