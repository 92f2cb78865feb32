# =========================================
# 📄 File: pedx/etl/city_registry.py
# Purpose: Canonical City dimension: encoding repair, canonical keys,
#          resolve-or-create, and merge-on-resolve of duplicate rows
# =========================================
"""
City Registry
-------------
 - canonical_key = fold(city) + "_" + fold(country), after the correction pre-pass.
 - resolve_or_create: exact (city, country) first, then canonical key, else insert.
   A placeholder-country row remembers its first key in source_key, so the same
   blank-country input still finds it after enrichment has filled the country.
 - Matched rows only receive values for attributes that are still empty
   (None, "" or the "Unknown" placeholder).
 - merge_duplicates re-points videos and deletes the duplicate inside one
   transaction per duplicate, so no video ever references a missing city.
 - Survivor order: clean display text first, then most videos, then lowest id.
"""

import logging
import unicodedata
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml
from sqlalchemy import delete, func, select, update

from config.config_loader import resolve_path
from pedx.db.engine import dialect_insert
from pedx.db.models import cities, videos
from pedx.errors import MergeConflictError, PipelineError
from pedx.etl.row_normalizer import clean_string, corruption_score
from pedx.report import RunReport

log = logging.getLogger(__name__)

PLACEHOLDER = "Unknown"

CITY_ATTRIBUTES = (
    "state", "iso3", "continent", "latitude", "longitude", "gmp",
    "population_city", "population_country", "traffic_mortality",
    "literacy_rate", "avg_height", "med_age", "gini",
)

# Letters Unicode does not decompose into base + combining mark
_FOLD_TABLE = str.maketrans({
    "ł": "l", "ø": "o", "đ": "d", "ı": "i", "ħ": "h",
    "ß": "ss", "æ": "ae", "œ": "oe", "þ": "th",
})

_CORRUPTION_MARKS = ("?", "®")


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in ("", PLACEHOLDER))


class EncodingCorrections:
    """
    Known corrupted -> correct replacements, kept as data (YAML) so the list can be
    extended without code changes.
    """

    def __init__(self, full_strings: Optional[Mapping[str, str]] = None,
                 substrings: Optional[Mapping[str, str]] = None):
        self.full_strings = dict(full_strings or {})
        self.substrings = dict(substrings or {})
        # Longest first so "¨¹" is not pre-empted by a shorter overlapping key
        self._ordered = sorted(self.substrings.items(), key=lambda kv: (-len(kv[0]), kv[0]))

    @classmethod
    def from_yaml(cls, path: str) -> "EncodingCorrections":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        corrections = cls(data.get("full_strings"), data.get("substrings"))
        log.debug(
            f"Loaded {len(corrections.full_strings)} full-string and "
            f"{len(corrections.substrings)} substring corrections from {path}"
        )
        return corrections

    def correct(self, raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        text = unicodedata.normalize("NFC", raw.strip())
        if text in self.full_strings:
            return self.full_strings[text]
        for bad, good in self._ordered:
            if bad in text:
                text = text.replace(bad, good)
        return text

    @staticmethod
    def is_corrupted(text: Optional[str]) -> bool:
        if not text:
            return False
        return corruption_score(text) > 0 or any(mark in text for mark in _CORRUPTION_MARKS)


def fold(text: Optional[str]) -> str:
    """Lowercase, strip diacritics, keep only letters and digits."""
    if not text:
        return ""
    lowered = text.lower().translate(_FOLD_TABLE)
    decomposed = unicodedata.normalize("NFD", lowered)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch) and ch.isalnum())


class CityRegistry:
    def __init__(self, engine, corrections: Optional[EncodingCorrections] = None,
                 report: Optional[RunReport] = None, merge_conflict_min_videos: int = 50):
        self.engine = engine
        self.corrections = corrections or EncodingCorrections()
        self.report = report or RunReport()
        self.merge_conflict_min_videos = merge_conflict_min_videos

    @classmethod
    def from_config(cls, engine, cfg: Mapping[str, Any], report: Optional[RunReport] = None) -> "CityRegistry":
        settings = cfg.get("entity_resolution") or {}
        corrections_file = settings.get("corrections_file")
        corrections = EncodingCorrections.from_yaml(resolve_path(corrections_file)) if corrections_file else None
        return cls(
            engine, corrections, report,
            merge_conflict_min_videos=int(settings.get("merge_conflict_min_videos", 50)),
        )

    @property
    def stats(self):
        return self.report.stage("cities")

    # -----------------------
    # Keys and ranking
    # -----------------------
    def correct_known_corruption(self, raw: Optional[str]) -> Optional[str]:
        return self.corrections.correct(raw)

    def canonical_key(self, city: Optional[str], country: Optional[str]) -> str:
        return f"{fold(self.corrections.correct(city))}_{fold(self.corrections.correct(country))}"

    def is_corrupted_row(self, row: Mapping[str, Any]) -> bool:
        return self.corrections.is_corrupted(row["city"]) or self.corrections.is_corrupted(row["country"])

    def rank(self, row: Mapping[str, Any], video_counts: Mapping[int, int]):
        """Total order for survivor choice: clean text, more videos, lower id."""
        return (self.is_corrupted_row(row), -video_counts.get(row["id"], 0), row["id"])

    @staticmethod
    def video_counts(conn, city_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(city_ids)
        if not ids:
            return {}
        stmt = (
            select(videos.c.city_id, func.count())
            .where(videos.c.city_id.in_(ids))
            .group_by(videos.c.city_id)
        )
        return {city_id: count for city_id, count in conn.execute(stmt)}

    @staticmethod
    def fetch(conn, city_id: int):
        return conn.execute(select(cities).where(cities.c.id == city_id)).mappings().first()

    def find_by_key(self, conn, key: str, exclude_id: Optional[int] = None) -> List[Mapping[str, Any]]:
        stmt = select(cities).where(cities.c.canonical_key == key)
        if exclude_id is not None:
            stmt = stmt.where(cities.c.id != exclude_id)
        return conn.execute(stmt).mappings().all()

    def find_by_source_key(self, conn, key: str) -> List[Mapping[str, Any]]:
        """Rows first created under `key` from a placeholder country and enriched since."""
        return conn.execute(select(cities).where(cities.c.source_key == key)).mappings().all()

    # -----------------------
    # Resolve
    # -----------------------
    def resolve_or_create(self, raw_city: str, raw_country: Optional[str],
                          attrs: Optional[Mapping[str, Any]] = None,
                          needs_enrichment: bool = False) -> int:
        """
        Return the id of the City row for (raw_city, raw_country), creating it if needed.
        A blank country is stored as the "Unknown" placeholder and flagged for enrichment.
        """
        city = self.corrections.correct(clean_string(raw_city))
        if not city:
            raise PipelineError("city name is empty")
        country = self.corrections.correct(clean_string(raw_country)) or PLACEHOLDER
        if country == PLACEHOLDER:
            needs_enrichment = True
        attrs = {k: v for k, v in (attrs or {}).items() if k in CITY_ATTRIBUTES and v is not None}
        key = self.canonical_key(city, country)

        with self.engine.begin() as conn:
            row = conn.execute(
                select(cities).where(cities.c.city == city, cities.c.country == country)
            ).mappings().first()

            if row is None:
                candidates = self.find_by_key(conn, key)
                if not candidates and country == PLACEHOLDER:
                    # Enrichment has since replaced the placeholder on the original row
                    candidates = self.find_by_source_key(conn, key)
                if candidates:
                    counts = self.video_counts(conn, [c["id"] for c in candidates])
                    row = min(candidates, key=lambda c: self.rank(c, counts))
                    log.debug(f"City '{city}' ({country}) matched row {row['id']} by key {key}")

            if row is None:
                return self._insert(conn, city, country, key, attrs, needs_enrichment)

            self._merge_attributes(conn, row, city, country, attrs)
            return row["id"]

    def _insert(self, conn, city, country, key, attrs, needs_enrichment) -> int:
        stmt = dialect_insert(conn, cities).values(
            city=city, country=country, canonical_key=key,
            source_key=key if country == PLACEHOLDER else None,
            needs_enrichment=needs_enrichment, **attrs
        )
        # Fill-only on conflict so a concurrent insert never loses data
        fill = {c: func.coalesce(cities.c[c], stmt.excluded[c]) for c in attrs}
        fill["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=[cities.c.city, cities.c.country], set_=fill
        ).returning(cities.c.id)
        city_id = conn.execute(stmt).scalar_one()
        self.stats.created += 1
        log.debug(f"Created city {city_id}: {city} ({country})")
        return city_id

    def _merge_attributes(self, conn, row, city, country, attrs) -> None:
        values = {c: v for c, v in attrs.items() if is_blank(row[c]) and not is_blank(v)}

        # Repair a corrupted display name when a clean spelling arrives
        if self.is_corrupted_row(row) and not (
            self.corrections.is_corrupted(city) or self.corrections.is_corrupted(country)
        ):
            taken = conn.execute(
                select(cities.c.id).where(
                    cities.c.city == city, cities.c.country == country, cities.c.id != row["id"]
                )
            ).first()
            if taken is None:
                log.info(f"Repairing city {row['id']} display '{row['city']}' -> '{city}'")
                values["city"] = city
                values["country"] = country

        if not values:
            self.stats.unchanged += 1
            return
        values["updated_at"] = func.now()
        conn.execute(update(cities).where(cities.c.id == row["id"]).values(**values))
        self.stats.updated += 1

    # -----------------------
    # Merge
    # -----------------------
    def _check_merge_safe(self, conn, survivor, duplicate, same_place_verified: bool) -> None:
        if not same_place_verified:
            survivor_key = self.canonical_key(survivor["city"], survivor["country"])
            duplicate_key = self.canonical_key(duplicate["city"], duplicate["country"])
            if survivor_key != duplicate_key:
                raise MergeConflictError(
                    survivor["id"], duplicate["id"],
                    f"canonical keys differ ({survivor_key} vs {duplicate_key})",
                )
        counts = self.video_counts(conn, [survivor["id"], duplicate["id"]])
        threshold = self.merge_conflict_min_videos
        if counts.get(survivor["id"], 0) >= threshold and counts.get(duplicate["id"], 0) >= threshold:
            raise MergeConflictError(
                survivor["id"], duplicate["id"],
                f"both rows are referenced by at least {threshold} videos",
            )

    def merge_duplicates(self, canonical_id: int, duplicate_ids: Iterable[int],
                         same_place_verified: bool = False) -> int:
        """
        Fold each duplicate into `canonical_id`: move its videos, backfill the
        survivor's empty attributes, delete it. One transaction per duplicate.
        Raises MergeConflictError (that duplicate rolled back) when unsafe.
        """
        merged = 0
        for dup_id in duplicate_ids:
            if dup_id == canonical_id:
                continue
            with self.engine.begin() as conn:
                survivor = self.fetch(conn, canonical_id)
                duplicate = self.fetch(conn, dup_id)
                if survivor is None or duplicate is None:
                    raise MergeConflictError(canonical_id, dup_id, "row no longer exists")
                self._check_merge_safe(conn, survivor, duplicate, same_place_verified)

                moved = conn.execute(
                    update(videos).where(videos.c.city_id == dup_id).values(city_id=canonical_id)
                ).rowcount
                fill = {
                    c: duplicate[c] for c in CITY_ATTRIBUTES
                    if is_blank(survivor[c]) and not is_blank(duplicate[c])
                }
                if survivor["source_key"] is None and duplicate["source_key"] is not None:
                    fill["source_key"] = duplicate["source_key"]
                conn.execute(delete(cities).where(cities.c.id == dup_id))
                if fill:
                    fill["updated_at"] = func.now()
                    conn.execute(update(cities).where(cities.c.id == canonical_id).values(**fill))
            merged += 1
            self.stats.merged += 1
            log.info(
                f"🔗 Merged city {dup_id} ('{duplicate['city']}') into {canonical_id} "
                f"('{survivor['city']}'), moved {moved} videos"
            )
        return merged

    def deduplicate(self) -> Dict[int, int]:
        """
        Merge every group of rows sharing a canonical key into its best-ranked member.
        Also refreshes stale stored keys. Returns {merged_id: survivor_id}.
        Conflicts are left in place and reported for manual review.
        """
        with self.engine.begin() as conn:
            rows = conn.execute(select(cities)).mappings().all()
            counts = self.video_counts(conn, [r["id"] for r in rows])
            groups: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
            for row in rows:
                key = self.canonical_key(row["city"], row["country"])
                groups[key].append(row)
                if row["canonical_key"] != key:
                    conn.execute(update(cities).where(cities.c.id == row["id"]).values(canonical_key=key))

        remap: Dict[int, int] = {}
        for key, members in groups.items():
            if len(members) < 2:
                continue
            ordered = sorted(members, key=lambda r: self.rank(r, counts))
            survivor = ordered[0]
            for duplicate in ordered[1:]:
                try:
                    self.merge_duplicates(survivor["id"], [duplicate["id"]])
                    remap[duplicate["id"]] = survivor["id"]
                except MergeConflictError as e:
                    self.report.record_failure(
                        "cities", "city", f"{duplicate['city']}/{duplicate['country']}", e
                    )
        if remap:
            log.info(f"Deduplicated {len(remap)} city rows")
        return remap
