# =========================================
# 📄 File: pedx/etl/core_aggregator.py
# Purpose: Build/refresh cities -> videos -> pedestrians from the three
#          primary wide CSVs, one row per transaction, skip-and-count on failure
# =========================================
"""
Core Aggregator
---------------
 - all_video_info.csv is required: cities and videos come from it.
 - all_time_info.csv (optional) maps duration_seconds -> analysis_seconds.
 - all_pedestrian_info.csv (optional) feeds the pedestrians table.
 - Lookups are explicit dicts returned by each step and passed to the next;
   nothing is cached at module level.
 - Videos upsert on link (measurements last-write-wins); an ownership change is
   applied by a separate, logged UPDATE.
 - Pedestrians upsert on (video_id, track_id) but only CORE_UPDATE_COLUMNS are
   refreshed on conflict; the remaining flags keep their first-written values.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from pedx.db.audit import audit
from pedx.db.engine import dialect_insert
from pedx.db.models import PEDESTRIAN_FLAG_COLUMNS, pedestrians, videos
from pedx.errors import PipelineError, RowParseError, UnresolvedParentError
from pedx.etl.city_registry import PLACEHOLDER, CityRegistry
from pedx.etl.row_normalizer import ParsedCsv, TypedRow, read_csv
from pedx.report import RunReport

log = logging.getLogger(__name__)

VIDEO_FILE = "all_video_info.csv"
TIME_FILE = "all_time_info.csv"
PEDESTRIAN_FILE = "all_pedestrian_info.csv"

# target column -> source header, where they differ beyond letter case
VIDEO_ALIASES = {"arrow_board_prob": "Arrow Board_prob"}
PEDESTRIAN_ALIASES = {
    "army_vehicle": "army vehicle",
    "auto_rickshaw": "auto rickshaw",
    "three_wheelers_cng": "three wheelers -CNG-",
}
CITY_SOURCE_COLUMNS = {"latitude": "lat", "longitude": "lon"}

VIDEO_FLOAT_COLUMNS = (
    "duration_seconds", "average_age", "phone_usage_ratio", "risky_crossing_ratio",
    "run_red_light_ratio", "crosswalk_usage_ratio", "traffic_signs_ratio",
    "sidewalk_prob", "crosswalk_prob", "traffic_light_prob", "crack_prob",
    "potholes_prob", "police_car_prob", "arrow_board_prob", "cones_prob",
    "accident_prob", "avg_road_width", "crossing_time", "crossing_speed",
)
VIDEO_INT_COLUMNS = ("total_frames", "total_pedestrians", "total_crossed_pedestrians", "total_vehicles")
VIDEO_TEXT_COLUMNS = ("video_name", "top3_vehicles", "main_weather")

CITY_TEXT_ATTRIBUTES = ("state", "iso3", "continent")
CITY_NUMERIC_ATTRIBUTES = (
    "latitude", "longitude", "gmp", "population_city", "population_country",
    "traffic_mortality", "literacy_rate", "avg_height", "med_age", "gini",
)

# Refreshed on conflict; every other pedestrian column is first-write-wins
CORE_UPDATE_COLUMNS = (
    "crossed", "nearby_count_beginning", "nearby_count_whole", "risky_crossing",
    "run_red_light", "crosswalk_use_or_not", "gender", "age", "phone_using",
)

CityKey = Tuple[str, str]


class CityIdentity(NamedTuple):
    city: str
    country: str
    attrs: Dict[str, Any]
    needs_enrichment: bool


def _column(row: TypedRow, target: str, aliases: Mapping[str, str]) -> str:
    source = aliases.get(target)
    if source and row.has(source):
        return source
    return target


# -----------------------
# Cities
# -----------------------
def city_key(row: TypedRow, known_locations: Optional[Mapping[str, Mapping]] = None) -> CityKey:
    """(city, country) lookup key for a video row, with the same country fallback as city_identity."""
    city = row.text("city")
    if not city:
        raise RowParseError(row.source, row.row_number, "city", row.raw("city"), "missing city name")
    country = row.text("country")
    if not country:
        known = (known_locations or {}).get(city)
        country = known["country"] if known else PLACEHOLDER
    return city, country


def city_identity(row: TypedRow, known_locations: Optional[Mapping[str, Mapping]] = None,
                  cell_errors: Optional[List[RowParseError]] = None) -> CityIdentity:
    """
    (city, country, attributes) for one video row. A blank country is either
    filled from known_locations or replaced by the "Unknown" placeholder and
    flagged for enrichment.

    An unparseable attribute cell becomes None (appended to `cell_errors` when
    given) so the city itself still resolves.
    """
    city, _ = city_key(row, known_locations)

    attrs: Dict[str, Any] = {}
    for name in CITY_TEXT_ATTRIBUTES:
        attrs[name] = row.text(name)
    for name in CITY_NUMERIC_ATTRIBUTES:
        try:
            attrs[name] = row.number(CITY_SOURCE_COLUMNS.get(name, name))
        except RowParseError as e:
            attrs[name] = None
            if cell_errors is not None:
                cell_errors.append(e)

    country = row.text("country")
    needs_enrichment = False
    if not country:
        known = (known_locations or {}).get(city)
        if known:
            log.info(f"Filled missing location data for {city} from known_locations")
            country = known["country"]
            for name, value in known.items():
                if name != "country" and value is not None:
                    attrs[name] = value
        else:
            log.info(f"City {city} has no country; storing placeholder for enrichment")
            country = PLACEHOLDER
            attrs["continent"] = attrs.get("continent") or PLACEHOLDER
            needs_enrichment = True
    return CityIdentity(city, country, attrs, needs_enrichment)


def aggregate_cities(parsed: ParsedCsv, registry: CityRegistry,
                     known_locations: Optional[Mapping[str, Mapping]] = None) -> Dict[CityKey, int]:
    """Resolve every distinct (city, country) in the video file; returns {(city, country): id}."""
    report = registry.report
    city_ids: Dict[CityKey, int] = {}
    for row in parsed.typed_rows():
        cell_errors: List[RowParseError] = []
        try:
            key = city_key(row, known_locations)
            if key in city_ids:
                continue
            identity = city_identity(row, known_locations, cell_errors)
        except PipelineError as e:
            report.record_failure("cities", "city", f"{parsed.source} row {row.row_number}", e)
            continue
        for e in cell_errors:
            report.record_failure("cities", "attribute", f"{identity.city}/{identity.country}", e)
        try:
            city_ids[key] = registry.resolve_or_create(
                identity.city, identity.country, identity.attrs, identity.needs_enrichment
            )
        except (PipelineError, SQLAlchemyError) as e:
            report.record_failure("cities", "city", f"{identity.city}/{identity.country}", e)

    remap = registry.deduplicate()
    if remap:
        city_ids = {key: remap.get(city_id, city_id) for key, city_id in city_ids.items()}
    log.info(f"✅ Resolved {len(city_ids)} cities")
    return city_ids


# -----------------------
# Videos
# -----------------------
def load_time_map(parsed: Optional[ParsedCsv]) -> Dict[float, float]:
    """duration_seconds -> analysis_seconds from all_time_info.csv"""
    time_map: Dict[float, float] = {}
    if parsed is None:
        return time_map
    for row in parsed.typed_rows():
        try:
            duration = row.number("duration_seconds")
            analysis = row.number("analysis_seconds")
        except RowParseError as e:
            log.warning(f"Ignoring time row: {e}")
            continue
        if duration is not None and analysis is not None:
            time_map[duration] = analysis
    return time_map


def video_values(row: TypedRow, time_map: Mapping[float, float]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in VIDEO_FLOAT_COLUMNS:
        values[name] = row.number(_column(row, name, VIDEO_ALIASES))
    for name in VIDEO_INT_COLUMNS:
        values[name] = row.integer(name)
    for name in VIDEO_TEXT_COLUMNS:
        values[name] = row.text(name)

    analysis = row.number("analysis_seconds") if row.has("analysis_seconds") else None
    if analysis is None and values["duration_seconds"] is not None:
        analysis = time_map.get(values["duration_seconds"])
    values["analysis_seconds"] = analysis
    values["city_link"] = row.text("city_link") or f"{row.text('city')}_{row.text('link')}"
    values["data_collected_date"] = row.date("data_collected_date")
    return values


def _existing_videos(engine) -> Dict[str, Tuple[int, int]]:
    with engine.connect() as conn:
        rows = conn.execute(select(videos.c.link, videos.c.id, videos.c.city_id))
        return {link: (video_id, city_id) for link, video_id, city_id in rows}


def aggregate_videos(engine, parsed: ParsedCsv, city_ids: Mapping[CityKey, int],
                     time_map: Mapping[float, float], report: RunReport,
                     known_locations: Optional[Mapping[str, Mapping]] = None) -> Dict[str, int]:
    """Upsert videos keyed on link; returns {link: video_id} (including pre-existing videos)."""
    stats = report.stage("videos")
    existing = _existing_videos(engine)
    video_ids: Dict[str, int] = {link: ids[0] for link, ids in existing.items()}

    for row in parsed.typed_rows():
        link = row.text("link")
        key = link or f"{parsed.source} row {row.row_number}"
        try:
            if not link:
                raise RowParseError(parsed.source, row.row_number, "link", row.raw("link"), "missing link")
            city_id = city_ids.get(city_key(row, known_locations))
            if city_id is None:
                raise UnresolvedParentError("video", link)
            values = video_values(row, time_map)

            with engine.begin() as conn:
                stmt = dialect_insert(conn, videos).values(city_id=city_id, link=link, **values)
                set_ = {name: stmt.excluded[name] for name in values}
                set_["data_collected_date"] = func.coalesce(
                    stmt.excluded.data_collected_date, videos.c.data_collected_date
                )
                set_["last_updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(
                    index_elements=[videos.c.link], set_=set_
                ).returning(videos.c.id)
                video_id = conn.execute(stmt).scalar_one()

                previous = existing.get(link)
                if previous is not None and previous[1] != city_id:
                    conn.execute(update(videos).where(videos.c.id == video_id).values(city_id=city_id))
                    log.info(f"Video {link} reassigned from city {previous[1]} to {city_id}")
                    stats.reassigned += 1
        except UnresolvedParentError as e:
            report.record_failure("videos", "video", key, e, counter="skipped")
            continue
        except (PipelineError, SQLAlchemyError) as e:
            report.record_failure("videos", "video", key, e)
            continue

        if link in existing:
            stats.updated += 1
        else:
            stats.created += 1
        existing[link] = (video_id, city_id)
        video_ids[link] = video_id

    log.info(f"✅ Videos: {stats.created} created, {stats.updated} updated")
    return video_ids


# -----------------------
# Pedestrians
# -----------------------
def pedestrian_values(row: TypedRow) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "crossed": row.flag("crossed"),
        "nearby_count_beginning": row.integer("nearby_count_beginning"),
        "nearby_count_whole": row.integer("nearby_count_whole"),
        "risky_crossing": row.flag("risky_crossing"),
        "run_red_light": row.flag("run_red_light"),
        "crosswalk_use_or_not": row.flag("crosswalk_use_or_not"),
        "gender": row.text("gender"),
        "age": row.age("age"),
        "phone_using": row.flag("phone_using"),
        "weather": row.text("weather"),
        "avg_vehicle_total": row.number("avg_vehicle_total"),
        "avg_road_width": row.number("avg_road_width"),
    }
    for name in PEDESTRIAN_FLAG_COLUMNS:
        values[name] = row.flag(_column(row, name, PEDESTRIAN_ALIASES))
    return values


def _existing_pedestrians(engine):
    with engine.connect() as conn:
        return set(conn.execute(select(pedestrians.c.video_id, pedestrians.c.track_id)).tuples())


def aggregate_pedestrians(engine, parsed: ParsedCsv, video_ids: Mapping[str, int],
                          report: RunReport) -> int:
    """Upsert pedestrians keyed on (video, track_id); returns rows written."""
    stats = report.stage("pedestrians")
    existing = _existing_pedestrians(engine)
    written = 0

    for row in parsed.typed_rows():
        link = row.text("link")
        key = f"{link}#{row.raw('track_id')}"
        try:
            track_id = row.integer("track_id")
            if track_id is None:
                raise RowParseError(parsed.source, row.row_number, "track_id", row.raw("track_id"), "missing track_id")
            video_id = video_ids.get(link) if link else None
            if video_id is None:
                raise UnresolvedParentError("pedestrian", key)
            values = pedestrian_values(row)

            with engine.begin() as conn:
                stmt = dialect_insert(conn, pedestrians).values(video_id=video_id, track_id=track_id, **values)
                set_ = {name: stmt.excluded[name] for name in CORE_UPDATE_COLUMNS}
                set_["updated_at"] = func.now()
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[pedestrians.c.video_id, pedestrians.c.track_id], set_=set_
                    )
                )
        except UnresolvedParentError as e:
            report.record_failure("pedestrians", "pedestrian", key, e, counter="skipped")
            continue
        except (PipelineError, SQLAlchemyError) as e:
            report.record_failure("pedestrians", "pedestrian", key, e)
            continue

        if (video_id, track_id) in existing:
            stats.updated += 1
        else:
            stats.created += 1
            existing.add((video_id, track_id))
        written += 1
        if written % 1000 == 0:
            log.debug(f"Processed {written} pedestrians...")

    log.info(f"✅ Pedestrians: {stats.created} created, {stats.updated} updated")
    return written


# -----------------------
# Stage entry point
# -----------------------
def _loaded_failed(report: RunReport, stage: str) -> Tuple[int, int]:
    stats = report.stage(stage)
    return stats.created + stats.updated, stats.failed + stats.skipped


def _read_optional(path: str, report: RunReport) -> Optional[ParsedCsv]:
    name = os.path.basename(path)
    if not os.path.exists(path):
        log.warning(f"Optional primary file not found: {path}")
        report.record_file(name, "missing")
        return None
    try:
        return read_csv(path)
    except PipelineError as e:
        report.record_failure("core", "file", name, e)
        report.record_file(name, "unreadable", error=str(e))
        return None


def run_core(engine, source_dir: str, registry: CityRegistry,
             known_locations: Optional[Mapping[str, Mapping]] = None) -> Dict[str, Any]:
    """
    Cities -> videos -> pedestrians. Raises PipelineError (DecodeError included)
    when the video file is missing or unreadable, since nothing else can be keyed.
    """
    report = registry.report
    video_path = os.path.join(source_dir, VIDEO_FILE)
    if not os.path.exists(video_path):
        raise PipelineError(f"Primary file not found: {video_path}")
    start = datetime.now(timezone.utc)
    video_csv = read_csv(video_path)

    time_csv = _read_optional(os.path.join(source_dir, TIME_FILE), report)
    time_map = load_time_map(time_csv)
    if time_csv is not None:
        report.record_file(TIME_FILE, "loaded", rows=len(time_csv), encoding=time_csv.encoding)

    city_ids = aggregate_cities(video_csv, registry, known_locations)
    video_ids = aggregate_videos(engine, video_csv, city_ids, time_map, report, known_locations)
    loaded, failed = _loaded_failed(report, "videos")
    report.record_file(VIDEO_FILE, "loaded", rows=len(video_csv), encoding=video_csv.encoding,
                       failed=failed)
    audit(engine, "core", VIDEO_FILE, start, datetime.now(timezone.utc), loaded, failed)

    pedestrian_csv = _read_optional(os.path.join(source_dir, PEDESTRIAN_FILE), report)
    written = 0
    if pedestrian_csv is not None:
        start = datetime.now(timezone.utc)
        written = aggregate_pedestrians(engine, pedestrian_csv, video_ids, report)
        _, failed = _loaded_failed(report, "pedestrians")
        report.record_file(PEDESTRIAN_FILE, "loaded", rows=len(pedestrian_csv),
                           encoding=pedestrian_csv.encoding, failed=failed)
        audit(engine, "core", PEDESTRIAN_FILE, start, datetime.now(timezone.utc), written, failed)

    return {"city_ids": city_ids, "video_ids": video_ids, "pedestrians": written}
