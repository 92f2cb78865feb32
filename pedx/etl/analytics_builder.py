# =========================================
# 📄 File: pedx/etl/analytics_builder.py
# Purpose: Run the schema mapper over the summary statistics files (and the
#          optional per-city crawler exports) and load dimension/fact rows
# =========================================

import os
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from pedx.db.audit import audit
from pedx.db.engine import dialect_insert
from pedx.db.models import dimensions, facts
from pedx.errors import MappingSkipped, PipelineError
from pedx.etl.row_normalizer import read_csv
from pedx.etl.schema_mapper import SUMMARY_RULES, MappedFact, dimension_description, map_rows, rule_for
from pedx.report import RunReport

log = logging.getLogger(__name__)

STATS_FILES = tuple(SUMMARY_RULES)

DimensionKey = Tuple[str, str]

_VALUE_COLUMNS = {
    "numeric": "value_numeric",
    "percentage": "value_percentage",
    "correlation": "correlation_coefficient",
}


class AnalyticsBuilder:
    """
    Loads one file per transaction:
      - parse + map (pure, outside the transaction)
      - optionally delete the facts previously loaded from the same source
      - get-or-create each dimension via INSERT ... ON CONFLICT ... RETURNING
      - bulk insert the facts
    """

    def __init__(self, engine, report: RunReport, replace_existing: bool = True):
        self.engine = engine
        self.report = report
        self.replace_existing = replace_existing
        # Run-scoped: {(dimension_type, dimension_value): id}
        self.dimension_ids: Dict[DimensionKey, int] = {}

    @property
    def stats(self):
        return self.report.stage("analytics")

    def get_or_create_dimension(self, conn, dimension_type: str, dimension_value: str) -> int:
        key = (dimension_type, dimension_value)
        if key in self.dimension_ids:
            return self.dimension_ids[key]
        stmt = dialect_insert(conn, dimensions).values(
            dimension_type=dimension_type,
            dimension_value=dimension_value,
            description=dimension_description(dimension_type, dimension_value),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[dimensions.c.dimension_type, dimensions.c.dimension_value],
            set_={"description": stmt.excluded.description},
        ).returning(dimensions.c.id)
        dimension_id = conn.execute(stmt).scalar_one()
        self.dimension_ids[key] = dimension_id
        return dimension_id

    def _fact_row(self, fact: MappedFact, dimension_id: int, data_source: str) -> Dict:
        row = {
            "fact_type": fact.fact_type,
            "metric_name": fact.metric_name,
            "dimension_id": dimension_id,
            "value_numeric": None,
            "value_percentage": None,
            "correlation_coefficient": None,
            "sample_size": fact.sample_size,
            "data_source": data_source,
        }
        row[_VALUE_COLUMNS[fact.value_field]] = fact.value
        return row

    def write_facts(self, data_source: str, mapped: List[MappedFact]) -> int:
        """Replace (or append) the facts of one source file in a single transaction."""
        # Dimension ids cached inside a transaction that rolls back would be stale
        cache_before = dict(self.dimension_ids)
        try:
            with self.engine.begin() as conn:
                if self.replace_existing:
                    removed = conn.execute(delete(facts).where(facts.c.data_source == data_source)).rowcount
                    if removed:
                        log.debug(f"{data_source}: replaced {removed} previous facts")
                rows = [
                    self._fact_row(
                        fact,
                        self.get_or_create_dimension(conn, fact.dimension_type, fact.dimension_value),
                        data_source,
                    )
                    for fact in mapped
                ]
                if rows:
                    conn.execute(facts.insert(), rows)
        except SQLAlchemyError:
            self.dimension_ids = cache_before
            raise
        return len(rows)

    def process_file(self, path: str, data_source: Optional[str] = None, rule_name: Optional[str] = None) -> int:
        """
        Parse, map and load one file. Returns facts written; problems are recorded
        in the report and never raised.
        """
        data_source = data_source or os.path.basename(path)
        rule_name = rule_name or os.path.basename(path)
        start = datetime.now(timezone.utc)
        try:
            rule_for(rule_name)
            parsed = read_csv(path, source=data_source)
            result = map_rows(rule_name, parsed)
        except MappingSkipped as e:
            log.info(f"Skipping {data_source}: {e.reason}")
            self.report.record_file(data_source, "skipped", reason=e.reason)
            self.stats.skipped += 1
            return 0
        except (PipelineError, OSError) as e:
            self.report.record_failure("analytics", "file", data_source, e)
            self.report.record_file(data_source, "unreadable", error=str(e))
            return 0

        for err in result.row_errors:
            self.report.record_failure("analytics", "row", f"{data_source} row {err.row_number}", err)

        try:
            written = self.write_facts(data_source, result.facts)
        except SQLAlchemyError as e:
            self.report.record_failure("analytics", "file", data_source, e)
            self.report.record_file(data_source, "failed", error=str(e))
            audit(self.engine, "analytics", data_source, start, datetime.now(timezone.utc),
                  0, len(parsed), success=False, error=str(e))
            return 0

        self.stats.created += written
        self.report.record_file(
            data_source, "loaded", rows=len(parsed), facts=written,
            row_errors=len(result.row_errors), encoding=parsed.encoding,
        )
        audit(self.engine, "analytics", data_source, start, datetime.now(timezone.utc),
              written, len(result.row_errors))
        if not written:
            log.info(f"{data_source}: no mappable values")
        return written

    def run(self, source_dir: str, files: Iterable[str] = STATS_FILES) -> int:
        total = 0
        for filename in files:
            path = os.path.join(source_dir, filename)
            if not os.path.exists(path):
                log.warning(f"Stats file not found: {filename}")
                self.report.record_file(filename, "missing")
                continue
            total += self.process_file(path)
        log.info(f"✅ Analytics: {total} facts from {source_dir}")
        return total

    def run_crawler(self, crawler_dir: str) -> int:
        """Every CSV in each city sub-folder; provenance is "<city>/<file>"."""
        total = 0
        for city in sorted(os.listdir(crawler_dir)):
            folder = os.path.join(crawler_dir, city)
            if not os.path.isdir(folder):
                continue
            for filename in sorted(os.listdir(folder)):
                if not filename.lower().endswith(".csv"):
                    continue
                total += self.process_file(
                    os.path.join(folder, filename), data_source=f"{city}/{filename}", rule_name=filename
                )
        log.info(f"✅ Crawler analytics: {total} facts from {crawler_dir}")
        return total
