# =========================================
# 📄 File: pedx/enrichment/city_enricher.py
# Purpose: Fill missing City attributes from GeoNames, one city at a time,
#          recording an independent outcome per city in the run report
# =========================================
"""
City Enricher
-------------
 - Critical gaps (country, coordinates, continent) trigger a lookup.
 - Cities missing only optional demographic fields are skipped without calling
   the service unless force mode is on.
 - Placeholder values ("Unknown") count as missing.
 - Country/state/iso3/population are filled only where empty; coordinates and
   a known continent overwrite what is stored.
 - A newly learned country that makes the row collide with an existing city is
   resolved by merging the two through the registry before updating.
"""

import time
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import String, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from config.config_loader import is_missing
from pedx.db.models import cities
from pedx.enrichment.geonames_client import GeoNamesClient, RateLimiter
from pedx.enrichment.scoring import DEFAULT_MIN_SCORE, candidate_fields, score_and_select
from pedx.errors import ExternalServiceError, MergeConflictError
from pedx.etl.city_registry import PLACEHOLDER, CityRegistry, is_blank
from pedx.report import RunReport

log = logging.getLogger(__name__)

CRITICAL_FIELDS = ("country", "latitude", "longitude", "continent")
OPTIONAL_FIELDS = (
    "population_city", "traffic_mortality", "literacy_rate",
    "avg_height", "med_age", "gini",
)
# Force mode also chases these
EXTRA_FIELDS = ("state", "iso3", "gmp", "population_country")

ALL_FIELDS = CRITICAL_FIELDS + EXTRA_FIELDS + OPTIONAL_FIELDS

FILL_ONLY_FIELDS = ("state", "country", "iso3", "population_city")
OVERWRITE_FIELDS = ("latitude", "longitude")


def _missing_condition(column):
    if isinstance(column.type, String):
        return or_(column.is_(None), func.trim(column) == "", column == PLACEHOLDER)
    return column.is_(None)


def missing_fields(city: Mapping[str, Any], fields: Sequence[str] = ALL_FIELDS) -> List[str]:
    """Fields of `city` that are None, empty or the placeholder, in a stable order."""
    return [f for f in fields if is_blank(city.get(f))]


def should_skip(missing: Sequence[str], force_all: bool = False) -> bool:
    """Skip when nothing critical is missing (no external call is worth making)."""
    if force_all:
        return False
    return not any(f in CRITICAL_FIELDS for f in missing)


class CityEnricher:
    def __init__(self, engine, client, registry: CityRegistry, report: RunReport,
                 rate_limiter=None, min_score: float = DEFAULT_MIN_SCORE):
        self.engine = engine
        self.client = client
        self.registry = registry
        self.report = report
        self.rate_limiter = rate_limiter
        self.min_score = min_score

    @property
    def stats(self):
        return self.report.stage("enrichment")

    # -----------------------
    # Selection
    # -----------------------
    def list_cities_needing_update(self, force_all: bool = False) -> List[Mapping[str, Any]]:
        """
        Cities with a critical gap or flagged by the placeholder path; force mode
        adds every city with any gap at all.
        """
        fields = ALL_FIELDS if force_all else CRITICAL_FIELDS
        conditions = [_missing_condition(cities.c[f]) for f in fields]
        conditions.append(cities.c.needs_enrichment.is_(True))
        stmt = select(cities).where(or_(*conditions)).order_by(cities.c.city, cities.c.country)
        with self.engine.connect() as conn:
            return conn.execute(stmt).mappings().all()

    # -----------------------
    # Update
    # -----------------------
    def _collisions(self, conn, row, new_country: str) -> Tuple[int, List[int]]:
        """
        (survivor_id, duplicate_ids) among `row` and the cities the new country
        would make it identical to; no duplicates when nothing collides.
        """
        new_key = self.registry.canonical_key(row["city"], new_country)
        others = self.registry.find_by_key(conn, new_key, exclude_id=row["id"])
        if not others:
            return row["id"], []
        members = [row, *others]
        counts = self.registry.video_counts(conn, [m["id"] for m in members])
        ordered = sorted(members, key=lambda m: self.registry.rank(m, counts))
        return ordered[0]["id"], [m["id"] for m in ordered[1:]]

    def apply(self, city_id: int, fields: Mapping[str, Any]) -> int:
        """
        Write candidate `fields` into the City row; returns the id that was updated
        (it differs from `city_id` when the row was merged into an existing city).
        """
        target_id, duplicates = city_id, []
        with self.engine.connect() as conn:
            row = self.registry.fetch(conn, city_id)
            if row is None:
                raise MergeConflictError(city_id, city_id, "city no longer exists")
            new_country = fields.get("country")
            if new_country and is_blank(row["country"]):
                target_id, duplicates = self._collisions(conn, row, new_country)

        if duplicates:
            log.info(f"City {city_id} collides with {duplicates} once its country is known; merging")
            self.registry.merge_duplicates(target_id, duplicates, same_place_verified=True)

        with self.engine.begin() as conn:
            row = self.registry.fetch(conn, target_id)
            values: Dict[str, Any] = {}
            for f in FILL_ONLY_FIELDS:
                if is_blank(row[f]) and not is_blank(fields.get(f)):
                    values[f] = fields[f]
            for f in OVERWRITE_FIELDS:
                if fields.get(f) is not None:
                    values[f] = fields[f]
            if not is_blank(fields.get("continent")):
                values["continent"] = fields["continent"]

            country = values.get("country", row["country"])
            values["canonical_key"] = self.registry.canonical_key(row["city"], country)
            values["needs_enrichment"] = is_blank(country)
            values["updated_at"] = func.now()
            conn.execute(update(cities).where(cities.c.id == target_id).values(**values))
            if log.isEnabledFor(logging.DEBUG):
                log.debug(
                    f"City {target_id} set lat={values.get('latitude')}, "
                    f"lng={values.get('longitude')}, country={country}"
                )
        return target_id

    # -----------------------
    # Run
    # -----------------------
    def enrich_city(self, city: Mapping[str, Any], force_all: bool = False) -> str:
        """Look up and apply one city; returns the outcome recorded in the report."""
        label = f"{city['city']}, {city['country'] or PLACEHOLDER}"
        missing = missing_fields(city)
        log.info(f"📍 {label} missing: {', '.join(missing) or 'nothing'}")

        if should_skip(missing, force_all):
            self.report.record_enrichment(city["id"], label, "skipped", "optional data only")
            self.stats.skipped += 1
            return "skipped"

        if self.rate_limiter is not None:
            self.rate_limiter.wait()

        try:
            candidates = self.client.search(city["city"], city["state"], city["country"])
        except ExternalServiceError as e:
            self.report.record_failure("enrichment", "city", label, e)
            self.report.record_enrichment(city["id"], label, "failed", str(e))
            return "failed"

        best = score_and_select(candidates, city["city"], self.min_score)
        if best is None:
            reason = "no GeoNames match found" if candidates else "no GeoNames results"
            self.report.record_failure("enrichment", "city", label, reason)
            self.report.record_enrichment(city["id"], label, "failed", reason)
            return "failed"

        fields = candidate_fields(best)
        try:
            self.apply(city["id"], fields)
        except (MergeConflictError, SQLAlchemyError) as e:
            self.report.record_failure("enrichment", "city", label, e)
            self.report.record_enrichment(city["id"], label, "failed", str(e))
            return "failed"

        log.info(f"✅ {label} -> {best.get('name')}, {fields.get('country')} ({best.get('fcode')})")
        self.stats.updated += 1
        self.report.record_enrichment(city["id"], label, "updated")
        return "updated"

    def run(self, force_all: bool = False) -> Dict[str, int]:
        """Process the whole queue sequentially; one city's failure never stops the rest."""
        queue = self.list_cities_needing_update(force_all)
        if force_all:
            log.info("⚠️ Force mode: processing every city with any missing field")
        log.info(f"📊 {len(queue)} cities need enrichment")

        outcomes: Counter = Counter()
        merged_away: set = set()
        for city in queue:
            if city["id"] in merged_away:
                continue
            merges_before = self.registry.stats.merged
            outcome = self.enrich_city(city, force_all)
            outcomes[outcome] += 1
            if self.registry.stats.merged != merges_before:
                merged_away.update(self._removed_ids(queue))
        log.info(
            f"✅ Enrichment done: {outcomes['updated']} updated, "
            f"{outcomes['failed']} failed, {outcomes['skipped']} skipped"
        )
        return dict(outcomes)

    def _removed_ids(self, queue: Sequence[Mapping[str, Any]]) -> set:
        """Queued ids that no longer exist (merged away by an earlier update)."""
        ids = [c["id"] for c in queue]
        with self.engine.connect() as conn:
            present = set(conn.execute(select(cities.c.id).where(cities.c.id.in_(ids))).scalars())
        return set(ids) - present

    # -----------------------
    # Missing-data report
    # -----------------------
    def missing_data_report(self) -> Dict[str, Any]:
        """Counts per missing field and cities grouped by their missing-field pattern."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(cities).order_by(cities.c.city)).mappings().all()

        field_counts: Counter = Counter()
        patterns: Dict[str, List[str]] = defaultdict(list)
        for row in rows:
            missing = missing_fields(row)
            field_counts.update(missing)
            if missing:
                patterns[", ".join(missing)].append(f"{row['city']}, {row['country']}")

        return {
            "total_cities": len(rows),
            "complete_cities": len(rows) - sum(len(v) for v in patterns.values()),
            "field_counts": {f: field_counts[f] for f in ALL_FIELDS if field_counts[f]},
            "patterns": dict(sorted(patterns.items(), key=lambda kv: -len(kv[1]))),
        }


def build_enricher(engine, cfg: Mapping[str, Any], registry: CityRegistry, report: RunReport,
                   client=None, sleep=time.sleep) -> Optional[CityEnricher]:
    """
    Enricher wired from the `geonames` config section. Returns None when no client
    is given and no GeoNames username is configured.
    """
    geo = cfg.get("geonames") or {}
    if client is None:
        if is_missing(geo.get("username")):
            return None
        client = GeoNamesClient.from_config(geo, sleep=sleep)
    limiter = RateLimiter(float(geo.get("rate_limit_seconds", 1.0)), sleep=sleep)
    return CityEnricher(
        engine, client, registry, report,
        rate_limiter=limiter, min_score=float(geo.get("min_score", DEFAULT_MIN_SCORE)),
    )
