# tests/unit/test_core_aggregator.py
# ------------------------------------------------------------
# Purpose: Cities -> videos -> pedestrians from the primary
#          CSVs (pedx/etl/core_aggregator.py) on SQLite:
#          idempotence, placeholder/known-location handling,
#          skip-and-count for unresolvable parents.
# ------------------------------------------------------------

import os

import pytest
from sqlalchemy import func, select

from pedx.db.models import cities, ingest_audit, pedestrians, videos
from pedx.errors import PipelineError
from pedx.etl.core_aggregator import PEDESTRIAN_FILE, TIME_FILE, VIDEO_FILE, run_core


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


def _pedestrian(link, track_id, **extra):
    row = {
        "link": link,
        "track_id": str(track_id),
        "crossed": "True",
        "risky_crossing": "False",
        "run_red_light": "False",
        "crosswalk_use_or_not": "True",
        "gender": "female",
        "age": "Age20-30",
        "phone_using": "0",
        "backpack": "False",
        "army vehicle": "0",
    }
    row.update(extra)
    return row


@pytest.fixture
def source_dir(write_csv, make_video_row):
    write_csv(VIDEO_FILE, [
        make_video_row("v1", "Lisbon", "Portugal", continent="Europe", lat="38.72", lon="-9.14"),
        make_video_row("v2", "Lisbon", "Portugal", continent="Europe"),
        make_video_row("v3", "Asunci¨®n", "Paraguay", continent="South America"),
    ])
    path = write_csv(PEDESTRIAN_FILE, [
        _pedestrian("v1", 1),
        _pedestrian("v1", 2, gender="male"),
        _pedestrian("v3", 1),
    ])
    return os.path.dirname(path)


def test_run_core_loads_all_entities(engine, registry, source_dir, report):
    run_core(engine, source_dir, registry)
    # Two distinct cities, three videos, three pedestrians.
    assert _count(engine, cities) == 2
    assert _count(engine, videos) == 3
    assert _count(engine, pedestrians) == 3
    assert report.stage("videos").created == 3
    # One audit row per primary file.
    assert _count(engine, ingest_audit) == 2


def test_run_core_is_idempotent(engine, registry, source_dir, report):
    run_core(engine, source_dir, registry)
    counts = [_count(engine, t) for t in (cities, videos, pedestrians)]
    run_core(engine, source_dir, registry)
    # Re-running on identical input creates nothing new.
    assert [_count(engine, t) for t in (cities, videos, pedestrians)] == counts
    assert report.stage("videos").updated == 3
    assert report.stage("pedestrians").updated == 3


def test_missing_video_file_is_fatal(engine, registry, tmp_path):
    # Nothing can be keyed without the video file.
    with pytest.raises(PipelineError):
        run_core(engine, str(tmp_path), registry)


def test_blank_country_uses_placeholder_or_known_location(engine, registry, write_csv, make_video_row, test_cfg):
    path = write_csv(VIDEO_FILE, [
        make_video_row("t1", "Testville", ""),
        make_video_row("b1", "Brooklyn", ""),
    ])
    run_core(engine, os.path.dirname(path), registry, test_cfg["known_locations"])
    with engine.connect() as conn:
        rows = {r["city"]: r for r in conn.execute(select(cities)).mappings()}
    # Unknown location: placeholder, flagged for enrichment.
    assert rows["Testville"]["country"] == "Unknown"
    assert rows["Testville"]["needs_enrichment"] is True
    # The known exception is filled from config.
    assert rows["Brooklyn"]["country"] == "United States"
    assert rows["Brooklyn"]["latitude"] == pytest.approx(40.6782)
    assert rows["Brooklyn"]["needs_enrichment"] is False
    # Both videos were kept.
    assert _count(engine, videos) == 2


def test_row_without_city_is_reported_not_loaded(engine, registry, write_csv, make_video_row, report):
    path = write_csv(VIDEO_FILE, [
        make_video_row("ok", "Lisbon", "Portugal"),
        make_video_row("bad", "", "Portugal"),
    ])
    run_core(engine, os.path.dirname(path), registry)
    # The good row survives the bad one.
    assert _count(engine, videos) == 1
    keys = [f.key for f in report.failures]
    assert "bad" in keys


def test_malformed_numeric_cell_drops_only_that_row(engine, registry, write_csv, make_video_row, report):
    path = write_csv(VIDEO_FILE, [
        make_video_row("ok", "Lisbon", "Portugal"),
        make_video_row("bad", "Lisbon", "Portugal", total_frames="lots"),
    ])
    run_core(engine, os.path.dirname(path), registry)
    assert _count(engine, videos) == 1
    assert report.stage("videos").failed == 1
    assert report.failures[0].error_type == "RowParseError"


def test_pedestrian_with_unknown_video_is_skipped(engine, registry, write_csv, make_video_row, report):
    write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal")])
    path = write_csv(PEDESTRIAN_FILE, [_pedestrian("v1", 1), _pedestrian("ghost", 1)])
    run_core(engine, os.path.dirname(path), registry)
    assert _count(engine, pedestrians) == 1
    # Counted as skipped, with the natural key in the report.
    assert report.stage("pedestrians").skipped == 1
    assert any(f.key == "ghost#1" for f in report.failures)


def test_pedestrian_reimport_updates_core_columns_only(engine, registry, write_csv, make_video_row):
    write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal")])
    path = write_csv(PEDESTRIAN_FILE, [_pedestrian("v1", 1, crossed="False", backpack="True")])
    source_dir = os.path.dirname(path)
    run_core(engine, source_dir, registry)

    write_csv(PEDESTRIAN_FILE, [_pedestrian("v1", 1, crossed="True", backpack="False")])
    run_core(engine, source_dir, registry)
    with engine.connect() as conn:
        row = conn.execute(select(pedestrians)).mappings().one()
    # Core column refreshed.
    assert row["crossed"] is True
    # Non-core flag keeps its first-written value.
    assert row["backpack"] is True


def test_video_reassigned_when_city_changes(engine, registry, write_csv, make_video_row, report):
    path = write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal")])
    source_dir = os.path.dirname(path)
    run_core(engine, source_dir, registry)

    write_csv(VIDEO_FILE, [make_video_row("v1", "Porto", "Portugal")])
    run_core(engine, source_dir, registry)
    with engine.connect() as conn:
        owner = conn.execute(
            select(cities.c.city).join(videos, videos.c.city_id == cities.c.id)
        ).scalar_one()
    assert owner == "Porto"
    # The ownership change is counted separately.
    assert report.stage("videos").reassigned == 1


def test_time_info_fills_analysis_seconds(engine, registry, write_csv, make_video_row):
    write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal", duration_seconds="60")])
    path = write_csv(TIME_FILE, [{"duration_seconds": "60", "analysis_seconds": "42.5"}])
    run_core(engine, os.path.dirname(path), registry)
    with engine.connect() as conn:
        analysis = conn.execute(select(videos.c.analysis_seconds)).scalar_one()
    assert analysis == pytest.approx(42.5)


def test_data_collected_date_survives_blank_reimport(engine, registry, write_csv, make_video_row):
    path = write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal", data_collected_date="2023-04-01")])
    source_dir = os.path.dirname(path)
    run_core(engine, source_dir, registry)
    write_csv(VIDEO_FILE, [make_video_row("v1", "Lisbon", "Portugal", data_collected_date="")])
    run_core(engine, source_dir, registry)
    with engine.connect() as conn:
        collected = conn.execute(select(videos.c.data_collected_date)).scalar_one()
    # A blank re-import never clears the stored date.
    assert str(collected) == "2023-04-01"


def test_bad_demographic_cell_keeps_city_and_videos(engine, registry, write_csv, make_video_row, report):
    path = write_csv(VIDEO_FILE, [
        make_video_row("l1", "Lagos", "Nigeria", gini="n.a.", literacy_rate="62.0"),
        make_video_row("l2", "Lagos", "Nigeria", gini="n.a.", literacy_rate="62.0"),
    ])
    run_core(engine, os.path.dirname(path), registry)
    with engine.connect() as conn:
        row = conn.execute(select(cities)).mappings().one()
    # The unparseable attribute is left empty, the valid one is kept.
    assert row["gini"] is None
    assert row["literacy_rate"] == pytest.approx(62.0)
    # Both videos still load under the city.
    assert _count(engine, videos) == 2
    assert report.stage("videos").skipped == 0
    # The bad cell is reported once, for the city.
    attribute_errors = [f for f in report.failures if f.entity == "attribute"]
    assert len(attribute_errors) == 1
    assert attribute_errors[0].error_type == "RowParseError"
    assert attribute_errors[0].key == "Lagos/Nigeria"


def test_blank_country_rerun_finds_enriched_city(engine, registry, write_csv, make_video_row):
    path = write_csv(VIDEO_FILE, [make_video_row("t1", "Testville", "")])
    source_dir = os.path.dirname(path)
    run_core(engine, source_dir, registry)
    with engine.begin() as conn:
        # What enrichment does once GeoNames supplies the country.
        conn.execute(cities.update().values(
            country="Testland", canonical_key="testville_testland", needs_enrichment=False
        ))
        city_id = conn.execute(select(cities.c.id)).scalar_one()

    run_core(engine, source_dir, registry)
    # No second placeholder row, and the video keeps its owner.
    assert _count(engine, cities) == 1
    with engine.connect() as conn:
        owner = conn.execute(select(videos.c.city_id)).scalar_one()
        country = conn.execute(select(cities.c.country)).scalar_one()
    assert owner == city_id
    assert country == "Testland"
