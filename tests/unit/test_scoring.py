# tests/unit/test_scoring.py
# ------------------------------------------------------------
# Purpose: Candidate scoring/selection and field extraction
#          (pedx/enrichment/scoring.py, country_codes.py).
#          Pure functions, no DB, no network.
# ------------------------------------------------------------

import pytest

from pedx.enrichment.country_codes import continent_for, to_iso3
from pedx.enrichment.scoring import (
    candidate_fields,
    feature_bonus,
    feature_code,
    name_similarity,
    score_and_select,
    score_candidate,
)


def _candidate(name, fcode="PPL", fcl="P", **extra):
    data = {"name": name, "fcode": fcode, "fcl": fcl}
    data.update(extra)
    return data


def test_name_similarity_strategy_order():
    # Exact (case-insensitive) beats everything.
    assert name_similarity("Lisbon", "lisbon") == 1.0
    # Diacritic-only difference.
    assert name_similarity("Asunción", "Asuncion") == 0.9
    # Containment either way.
    assert name_similarity("York", "New York") == 0.5
    # Otherwise a scaled edit similarity, always below containment.
    assert 0 < name_similarity("Lisbon", "Lisboa") < 0.3


def test_feature_code_and_bonus():
    # The feature-class prefix is ignored.
    assert feature_code({"fcode": "P.PPLA2"}) == "PPLA2"
    assert feature_bonus({"fcode": "PPLC"}) == 20
    assert feature_bonus({"fcode": "PPLA"}) == 20
    assert feature_bonus({"fcode": "P.PPLA2"}) == 15
    assert feature_bonus({"fcode": "PPLX"}) == 10
    assert feature_bonus({"fcode": "ADM1"}) == 0


def test_score_combines_similarity_and_bonus():
    assert score_candidate(_candidate("Lisbon", "PPLC"), "Lisbon") == pytest.approx(120)
    assert score_candidate(_candidate("Asuncion", "PPLC"), "Asunción") == pytest.approx(110)


def test_select_rejects_scores_at_or_below_threshold():
    candidates = [_candidate("Qwerty", fcode="", fcl="")]
    assert score_and_select(candidates, "Lisbon") is None
    # Empty input is no match, not an error.
    assert score_and_select([], "Lisbon") is None


def test_select_is_deterministic_on_ties():
    first = _candidate("Springfield", adminName1="Illinois")
    second = _candidate("Springfield", adminName1="Missouri")
    # Equal scores keep the service's own ordering.
    assert score_and_select([first, second], "Springfield") is first
    assert score_and_select([second, first], "Springfield") is second


def test_select_prefers_populated_places():
    region = _candidate("Lisbon", fcode="ADM1", fcl="A")
    town = _candidate("Lisboa", fcode="PPL", fcl="P")
    # The administrative area is dropped although its name matches exactly.
    assert score_and_select([region, town], "Lisbon") is town


def test_select_uses_admin_areas_when_nothing_else():
    region = _candidate("Lisbon", fcode="ADM1", fcl="A")
    assert score_and_select([region], "Lisbon") is region


def test_candidate_fields_maps_iso3_and_continent():
    fields = candidate_fields({
        "name": "Asunción",
        "adminName1": "Asunción",
        "countryName": "Paraguay",
        "countryCode": "PY",
        "lat": "-25.28646",
        "lng": "-57.647",
        "population": 521559,
    })
    assert fields["iso3"] == "PRY"
    assert fields["continent"] == "South America"
    assert fields["latitude"] == pytest.approx(-25.28646)
    assert fields["population_city"] == 521559


def test_candidate_fields_tolerates_missing_values():
    fields = candidate_fields({"name": "Testville", "countryName": "Testland", "lat": "1.0", "lng": "2.0"})
    assert fields["country"] == "Testland"
    # Nothing to derive these from.
    assert fields["iso3"] is None
    assert fields["continent"] is None
    assert fields["population_city"] is None


def test_country_code_helpers():
    assert to_iso3("pt") == "PRT"
    # Unknown codes pass through.
    assert to_iso3("XK") == "XK"
    # Caribbean territories belong to North America.
    assert continent_for("PRI") == "North America"
    # Falls back to the GeoNames continent code.
    assert continent_for("XK", "EU") == "Europe"
