# =========================================
# 📄 File: pedx/quality/integrity_checks.py
# Purpose: Post-load integrity checks over the loaded tables
# - No two cities share a canonical key
# - No video/pedestrian points at a missing parent
# - Count cities still carrying placeholder values (informational)
# =========================================

import logging
from typing import Any, Dict, List

import pandas as pd
from sqlalchemy import or_, select

from pedx.db.models import cities, pedestrians, videos
from pedx.etl.city_registry import PLACEHOLDER
from pedx.report import RunReport

log = logging.getLogger(__name__)

MAX_EXAMPLES = 10


def _result(violations: List[str], blocking: bool = True) -> Dict[str, Any]:
    return {
        "passed": not violations if blocking else True,
        "count": len(violations),
        "examples": violations[:MAX_EXAMPLES],
    }


def _expect_unique_canonical_keys(conn) -> List[str]:
    df = pd.read_sql(select(cities.c.id, cities.c.canonical_key), conn)
    dupes = df[df.duplicated("canonical_key", keep=False)]
    return [
        f"{key}: ids {sorted(group['id'].tolist())}"
        for key, group in dupes.groupby("canonical_key")
    ]


def _expect_no_orphan_videos(conn) -> List[str]:
    stmt = (
        select(videos.c.link, videos.c.city_id)
        .select_from(videos.outerjoin(cities, videos.c.city_id == cities.c.id))
        .where(cities.c.id.is_(None))
    )
    df = pd.read_sql(stmt, conn)
    return [f"{row.link} -> city {row.city_id}" for row in df.itertuples()]


def _expect_no_orphan_pedestrians(conn) -> List[str]:
    stmt = (
        select(pedestrians.c.video_id, pedestrians.c.track_id)
        .select_from(pedestrians.outerjoin(videos, pedestrians.c.video_id == videos.c.id))
        .where(videos.c.id.is_(None))
    )
    df = pd.read_sql(stmt, conn)
    return [f"video {row.video_id} track {row.track_id}" for row in df.itertuples()]


def _placeholder_cities(conn) -> List[str]:
    stmt = select(cities.c.city, cities.c.country).where(
        or_(
            cities.c.country == PLACEHOLDER,
            cities.c.continent.is_(None),
            cities.c.continent == PLACEHOLDER,
        )
    ).order_by(cities.c.city)
    df = pd.read_sql(stmt, conn)
    return [f"{row.city}, {row.country}" for row in df.itertuples()]


def run_integrity_checks(engine, report: RunReport) -> int:
    """
    Run every check, store results under report.quality and return the number of
    failed blocking checks. Violations are logged at ERROR; the caller decides
    whether they change the exit code.
    """
    with engine.connect() as conn:
        results = {
            "unique_canonical_keys": _result(_expect_unique_canonical_keys(conn)),
            "no_orphan_videos": _result(_expect_no_orphan_videos(conn)),
            "no_orphan_pedestrians": _result(_expect_no_orphan_pedestrians(conn)),
            "placeholder_cities": _result(_placeholder_cities(conn), blocking=False),
        }
    report.quality.update(results)

    failed = 0
    for check, result in results.items():
        if not result["passed"]:
            failed += 1
            log.error(f"❌ Integrity check {check} failed: {result['count']} violations, e.g. {result['examples'][:3]}")
        elif result["count"]:
            log.warning(f"⚠️ {check}: {result['count']}")
        else:
            log.info(f"✅ {check}")
    return failed
