# tests/unit/test_city_registry.py
# ------------------------------------------------------------
# Purpose: Entity resolution for cities: encoding repair,
#          canonical keys, fill-only attribute merges and
#          merge-on-resolve (pedx/etl/city_registry.py).
#          Runs against the in-memory SQLite fixture.
# ------------------------------------------------------------

import pytest
from sqlalchemy import func, select

from pedx.db.models import cities, videos
from pedx.errors import MergeConflictError
from pedx.etl.city_registry import EncodingCorrections, fold


def _insert_city(engine, city, country, key="stale", **attrs):
    with engine.begin() as conn:
        result = conn.execute(
            cities.insert().values(city=city, country=country, canonical_key=key, **attrs)
        )
        return result.inserted_primary_key[0]


def _insert_videos(engine, city_id, count, prefix):
    with engine.begin() as conn:
        for i in range(count):
            conn.execute(videos.insert().values(city_id=city_id, link=f"{prefix}-{i}"))


def _city_count(engine):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(cities)).scalar_one()


def test_fold_strips_diacritics_and_special_letters():
    assert fold("São Paulo") == "saopaulo"
    # Letters without a Unicode decomposition are folded explicitly.
    assert fold("Łódź") == "lodz"
    assert fold("Straße") == "strasse"


def test_corrections_full_string_then_substrings():
    corrections = EncodingCorrections(
        full_strings={"Bia?ystok": "Białystok"},
        substrings={"¨®": "ó", "¨": "?"},
    )
    assert corrections.correct("Bia?ystok") == "Białystok"
    # Longer keys win over shorter overlapping ones.
    assert corrections.correct("Asunci¨®n") == "Asunción"
    assert EncodingCorrections.is_corrupted("Asunci¨®n")
    assert not EncodingCorrections.is_corrupted("Asunción")


def test_resolve_or_create_is_idempotent(registry, report):
    first = registry.resolve_or_create("Lisbon", "Portugal", {"continent": "Europe"})
    second = registry.resolve_or_create("Lisbon", "Portugal", {"continent": "Europe"})
    # Same row both times.
    assert first == second
    stats = report.stage("cities")
    assert stats.created == 1
    # Nothing new to fill on the second call.
    assert stats.unchanged == 1


def test_corrupted_spelling_resolves_to_clean_city(registry, engine):
    clean = registry.resolve_or_create("Asunción", "Paraguay")
    corrupted = registry.resolve_or_create("Asunci¨®n", "Paraguay")
    # The GBK round-trip spelling lands on the same row.
    assert corrupted == clean
    assert _city_count(engine) == 1


def test_corrupted_spelling_first_is_stored_repaired(registry, engine):
    city_id = registry.resolve_or_create("Asunci¨®n", "Paraguay")
    with engine.connect() as conn:
        stored = conn.execute(select(cities.c.city).where(cities.c.id == city_id)).scalar_one()
    # Display text is stored corrected.
    assert stored == "Asunción"
    assert registry.resolve_or_create("Asunción", "Paraguay") == city_id


def test_unaccented_spelling_matches_by_canonical_key(registry):
    accented = registry.resolve_or_create("São Paulo", "Brazil")
    plain = registry.resolve_or_create("Sao Paulo", "Brazil")
    # No dictionary entry needed: the canonical key matches.
    assert plain == accented


def test_blank_country_gets_placeholder_and_flag(registry, engine):
    city_id = registry.resolve_or_create("Testville", "")
    with engine.connect() as conn:
        row = conn.execute(select(cities).where(cities.c.id == city_id)).mappings().one()
    assert row["country"] == "Unknown"
    # Flagged so enrichment picks it up.
    assert row["needs_enrichment"] is True


def test_placeholder_remembers_source_key_after_enrichment(registry, engine):
    city_id = registry.resolve_or_create("Testville", "")
    with engine.begin() as conn:
        assert registry.fetch(conn, city_id)["source_key"] == "testville_unknown"
        conn.execute(cities.update().where(cities.c.id == city_id).values(
            country="Testland", canonical_key="testville_testland"
        ))
        # The key lookup no longer sees it; the source key still does.
        assert registry.find_by_key(conn, "testville_unknown") == []
        assert [r["id"] for r in registry.find_by_source_key(conn, "testville_unknown")] == [city_id]

    assert registry.resolve_or_create("Testville", "") == city_id
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(cities)).scalar_one() == 1


def test_known_country_has_no_source_key(registry, engine):
    city_id = registry.resolve_or_create("Lisbon", "Portugal")
    with engine.connect() as conn:
        assert registry.fetch(conn, city_id)["source_key"] is None


def test_attributes_are_fill_only(registry, engine):
    city_id = registry.resolve_or_create("Lisbon", "Portugal", {"latitude": 38.72, "gini": None})
    registry.resolve_or_create("Lisbon", "Portugal", {"latitude": 0.0, "gini": 33.8})
    with engine.connect() as conn:
        row = conn.execute(select(cities).where(cities.c.id == city_id)).mappings().one()
    # Existing value kept, missing one filled.
    assert row["latitude"] == pytest.approx(38.72)
    assert row["gini"] == pytest.approx(33.8)


def test_merge_duplicates_repoints_videos(registry, engine):
    survivor = _insert_city(engine, "São Paulo", "Brazil", "saopaulo_brazil")
    duplicate = _insert_city(engine, "Sao Paulo", "Brazil", "saopaulo_brazil", gini=52.9)
    _insert_videos(engine, survivor, 1, "s")
    _insert_videos(engine, duplicate, 2, "d")

    merged = registry.merge_duplicates(survivor, [duplicate])
    assert merged == 1
    with engine.connect() as conn:
        orphans = conn.execute(
            select(func.count()).select_from(videos).where(videos.c.city_id == duplicate)
        ).scalar_one()
        moved = conn.execute(
            select(func.count()).select_from(videos).where(videos.c.city_id == survivor)
        ).scalar_one()
        gini = conn.execute(select(cities.c.gini).where(cities.c.id == survivor)).scalar_one()
    # No video points at the deleted row; all three are on the survivor.
    assert orphans == 0
    assert moved == 3
    # The survivor's empty attribute was backfilled from the duplicate.
    assert gini == pytest.approx(52.9)
    assert _city_count(engine) == 1


def test_merge_refuses_different_places(registry, engine):
    lisbon = _insert_city(engine, "Lisbon", "Portugal")
    porto = _insert_city(engine, "Porto", "Portugal")
    # Different canonical keys are never merged automatically.
    with pytest.raises(MergeConflictError):
        registry.merge_duplicates(lisbon, [porto])
    assert _city_count(engine) == 2


def test_merge_refuses_two_heavily_referenced_rows(registry, engine):
    a = _insert_city(engine, "São Paulo", "Brazil")
    b = _insert_city(engine, "Sao Paulo", "Brazil")
    # The registry fixture uses a threshold of 3 videos.
    _insert_videos(engine, a, 3, "a")
    _insert_videos(engine, b, 3, "b")
    with pytest.raises(MergeConflictError):
        registry.merge_duplicates(a, [b])
    with engine.connect() as conn:
        still_on_b = conn.execute(
            select(func.count()).select_from(videos).where(videos.c.city_id == b)
        ).scalar_one()
    # Rolled back: nothing moved.
    assert still_on_b == 3


def test_deduplicate_prefers_clean_spelling(registry, engine, report):
    corrupted = _insert_city(engine, "SÃ£o Paulo", "Brazil")
    clean = _insert_city(engine, "São Paulo", "Brazil")
    # The corrupted row has more videos but clean text ranks first.
    _insert_videos(engine, corrupted, 2, "c")
    _insert_videos(engine, clean, 1, "k")

    remap = registry.deduplicate()
    assert remap == {corrupted: clean}
    with engine.connect() as conn:
        key = conn.execute(select(cities.c.canonical_key).where(cities.c.id == clean)).scalar_one()
    # Stale stored keys are refreshed.
    assert key == "saopaulo_brazil"
    assert report.stage("cities").merged == 1


def test_deduplicate_reports_conflicts(registry, engine, report):
    a = _insert_city(engine, "São Paulo", "Brazil")
    b = _insert_city(engine, "Sao Paulo", "Brazil")
    _insert_videos(engine, a, 3, "a")
    _insert_videos(engine, b, 3, "b")

    remap = registry.deduplicate()
    # Left for manual review, visible in the report.
    assert remap == {}
    assert [f.error_type for f in report.failures] == ["MergeConflictError"]
    assert _city_count(engine) == 2
