# tests/conftest.py
# ------------------------------------------------------------
# Purpose: Shared fixtures. Every test gets a throwaway in-memory
# SQLite database with the full schema (foreign keys enforced),
# a fresh run report and the real encoding-corrections file, so
# no Postgres, secrets or network are needed.
# ------------------------------------------------------------

import os

import pandas as pd
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config.config_loader import CONFIG_DIR
from pedx.db.engine import configure_engine
from pedx.db.models import Base
from pedx.etl.city_registry import CityRegistry, EncodingCorrections
from pedx.report import RunReport


@pytest.fixture
def engine():
    # One shared connection so every engine.begin() sees the same in-memory DB.
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    eng = configure_engine(eng)            # PRAGMA foreign_keys=ON on connect
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def report():
    return RunReport(environment="test")


@pytest.fixture
def corrections():
    # The same dictionary the pipeline loads in production.
    return EncodingCorrections.from_yaml(os.path.join(CONFIG_DIR, "encoding_corrections.yaml"))


@pytest.fixture
def registry(engine, corrections, report):
    return CityRegistry(engine, corrections, report, merge_conflict_min_videos=3)


@pytest.fixture
def write_csv(tmp_path):
    """
    Factory writing a CSV under tmp_path and returning its path.
    `rows` is either a list of dicts (written with pandas) or raw text.
    """
    def _write(name, rows, encoding="utf-8", folder=None):
        directory = tmp_path / folder if folder else tmp_path
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        if isinstance(rows, str):
            path.write_bytes(rows.encode(encoding))
        else:
            pd.DataFrame(rows).to_csv(path, index=False, encoding=encoding)
        return str(path)

    return _write


@pytest.fixture
def test_cfg(tmp_path):
    """Config dict shaped like config/dev.yaml, pointing at tmp_path."""
    return {
        "environment": "test",
        "log_level": "WARNING",
        "db_schema": "public",
        "source_dir": str(tmp_path),
        "report_path": str(tmp_path / "run_report.json"),
        "database": {"url": "sqlite://"},
        "geonames": {
            "base_url": "http://api.geonames.org",
            "username": "tester",
            "max_rows": 10,
            "rate_limit_seconds": 0,
            "timeout_seconds": 5,
            "max_retries": 1,
            "min_score": 30,
        },
        "entity_resolution": {
            "corrections_file": os.path.join(CONFIG_DIR, "encoding_corrections.yaml"),
            "merge_conflict_min_videos": 50,
        },
        "analytics": {"replace_existing": True, "crawler_dir": None},
        "known_locations": {
            "Brooklyn": {
                "country": "United States",
                "state": "New York",
                "iso3": "USA",
                "continent": "North America",
                "latitude": 40.6782,
                "longitude": -73.9442,
            }
        },
    }


def video_row(link, city, country, **extra):
    """Minimal all_video_info.csv row; extra columns override defaults."""
    row = {
        "link": link,
        "city": city,
        "country": country,
        "state": "",
        "continent": "",
        "lat": "",
        "lon": "",
        "duration_seconds": "60",
        "total_frames": "1800",
        "total_pedestrians": "10",
        "total_crossed_pedestrians": "4",
        "crossing_speed": "1.2",
        "crossing_time": "8.5",
        "main_weather": "clear",
    }
    row.update(extra)
    return row


@pytest.fixture
def make_video_row():
    return video_row
