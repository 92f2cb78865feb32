# tests/integration/test_pipeline_sqlite.py
# ------------------------------------------------------------
# Purpose: End-to-end runs of the ingestion pipeline on SQLite:
#          run_pipeline() with a stub GeoNames client, and the
#          pedx-ingest CLI entry point (exit codes + run report).
#          Needs no network or Postgres, so it is not gated.
# ------------------------------------------------------------

import json
import os

import pytest
from sqlalchemy import create_engine, func, select

from pedx.db.models import Base, cities, facts, pedestrians, videos
from pedx.etl import run_pipeline as pipeline
from pedx.etl.core_aggregator import PEDESTRIAN_FILE, VIDEO_FILE

pytestmark = pytest.mark.integration


class StubClient:
    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def search(self, city, state=None, country=None):
        self.calls.append(city)
        return self.answers.get(city, [])


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


@pytest.fixture
def source_dir(write_csv, make_video_row):
    write_csv(VIDEO_FILE, [
        make_video_row("v1", "Lisbon", "Portugal", continent="Europe", lat="38.72", lon="-9.14"),
        make_video_row("v2", "Testville", ""),
        make_video_row("v3", "Brooklyn", ""),
    ])
    write_csv(PEDESTRIAN_FILE, [
        {"link": "v1", "track_id": "1", "crossed": "True", "gender": "male", "age": "Age20-30"},
        {"link": "v2", "track_id": "1", "crossed": "False", "gender": "female", "age": "34"},
    ])
    path = write_csv("gender_stats.csv", [
        {"gender": "male", "risky_crossing": "0.2", "run_red_light": "0.05"},
        {"gender": "female", "risky_crossing": "0.1", "run_red_light": "0.03"},
    ])
    return os.path.dirname(path)


def test_run_pipeline_end_to_end(engine, report, test_cfg, source_dir):
    client = StubClient({
        "Testville": [{"name": "Testville", "countryName": "Testland", "lat": "1.0", "lng": "2.0",
                       "fcl": "P", "fcode": "PPL"}],
    })
    failed = pipeline.run_pipeline(engine, test_cfg, report, source_dir=source_dir, client=client)

    # Clean data: every blocking integrity check passes.
    assert failed == 0
    assert _count(engine, cities) == 3
    assert _count(engine, videos) == 3
    assert _count(engine, pedestrians) == 2
    # Two genders x two metrics.
    assert _count(engine, facts) == 4
    # Brooklyn was filled from config, so only the placeholder city was looked up.
    assert client.calls == ["Testville"]
    with engine.connect() as conn:
        country = conn.execute(select(cities.c.country).where(cities.c.city == "Testville")).scalar_one()
    assert country == "Testland"
    assert report.enrichment_summary() == {"updated": 1}


def test_run_pipeline_twice_is_stable(engine, report, test_cfg, source_dir):
    pipeline.run_pipeline(engine, test_cfg, report, source_dir=source_dir, skip_enrichment=True)
    counts = [_count(engine, t) for t in (cities, videos, pedestrians, facts)]
    pipeline.run_pipeline(engine, test_cfg, report, source_dir=source_dir, skip_enrichment=True)
    # Re-running converges instead of duplicating.
    assert [_count(engine, t) for t in (cities, videos, pedestrians, facts)] == counts


def test_missing_username_skips_enrichment(engine, report, test_cfg, source_dir):
    cfg = dict(test_cfg, geonames=dict(test_cfg["geonames"], username=""))
    pipeline.run_pipeline(engine, cfg, report, source_dir=source_dir, skip_analytics=True)
    # Visible in the report instead of failing the run.
    assert report.files["geonames"] == {"status": "skipped", "reason": "username not configured"}
    assert report.enrichment == []


def _write_config(tmp_path, source_dir, db_path):
    text = f"""
environment: test
log_level: WARNING
db_schema: public
source_dir: {source_dir}
report_path: {tmp_path / "report.json"}
database:
  url: sqlite:///{db_path}
geonames:
  username: ""
"""
    path = tmp_path / "pipeline.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


@pytest.fixture
def sqlite_file(tmp_path):
    db_path = tmp_path / "pedx.db"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(engine)
    engine.dispose()
    return db_path


def test_cli_success_writes_report(tmp_path, source_dir, sqlite_file):
    config = _write_config(tmp_path, source_dir, sqlite_file)
    code = pipeline.main(["--config", config, "--strict"])
    assert code == pipeline.EXIT_OK

    data = json.loads((tmp_path / "report.json").read_text(encoding="utf-8"))
    assert data["succeeded"] is True
    assert data["stages"]["videos"]["created"] == 3
    # The markdown twin is written next to the JSON.
    assert (tmp_path / "report.md").exists()


def test_cli_fatal_error_exits_one_and_still_reports(tmp_path, sqlite_file):
    empty = tmp_path / "empty"
    empty.mkdir()
    config = _write_config(tmp_path, empty, sqlite_file)
    code = pipeline.main(["--config", config])
    # No video file: nothing can be keyed, so the run aborts.
    assert code == pipeline.EXIT_FATAL

    data = json.loads((tmp_path / "report.json").read_text(encoding="utf-8"))
    assert data["succeeded"] is False
    assert data["fatal"].startswith("PipelineError")


def test_rerun_after_enrichment_keeps_enriched_city(engine, report, test_cfg, source_dir):
    client = StubClient({
        "Testville": [{"name": "Testville", "countryName": "Testland", "lat": "1.0", "lng": "2.0",
                       "fcl": "P", "fcode": "PPL"}],
    })
    pipeline.run_pipeline(engine, test_cfg, report, source_dir=source_dir, client=client)
    with engine.connect() as conn:
        enriched_id = conn.execute(select(cities.c.id).where(cities.c.city == "Testville")).scalar_one()

    # The CSV still has no country for Testville.
    pipeline.run_pipeline(engine, test_cfg, report, source_dir=source_dir, skip_enrichment=True)
    assert _count(engine, cities) == 3
    with engine.connect() as conn:
        owner = conn.execute(select(videos.c.city_id).where(videos.c.link == "v2")).scalar_one()
        country = conn.execute(select(cities.c.country).where(cities.c.id == enriched_id)).scalar_one()
    assert owner == enriched_id
    assert country == "Testland"
    # Only the first run needed GeoNames.
    assert client.calls == ["Testville"]
