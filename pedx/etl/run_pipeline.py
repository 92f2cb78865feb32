#!/usr/bin/env python3
# =========================================
# 📄 File: pedx/etl/run_pipeline.py
# Purpose: Full ingestion run: core entities -> analytics facts ->
#          enrichment -> integrity checks, then write the run report
# =========================================

import os
import sys
import time
import logging
import argparse
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from config.config_loader import get_config, resolve_path
from pedx.db.engine import get_engine
from pedx.enrichment.city_enricher import build_enricher
from pedx.errors import PipelineError
from pedx.etl.analytics_builder import AnalyticsBuilder
from pedx.etl.city_registry import CityRegistry
from pedx.etl.core_aggregator import run_core
from pedx.quality.integrity_checks import run_integrity_checks
from pedx.report import RunReport

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_QUALITY = 2


# -----------------------
# Stages
# -----------------------
def run_analytics(engine, cfg: Dict[str, Any], report: RunReport, source_dir: str,
                  crawler_dir: Optional[str] = None) -> int:
    settings = cfg.get("analytics") or {}
    builder = AnalyticsBuilder(engine, report, replace_existing=bool(settings.get("replace_existing", True)))
    total = builder.run(source_dir)
    crawler_dir = crawler_dir or settings.get("crawler_dir")
    if crawler_dir:
        crawler_dir = resolve_path(crawler_dir)
        if os.path.isdir(crawler_dir):
            total += builder.run_crawler(crawler_dir)
        else:
            log.warning(f"Crawler directory not found: {crawler_dir}")
    return total


def run_pipeline(engine, cfg: Dict[str, Any], report: RunReport,
                 source_dir: Optional[str] = None, crawler_dir: Optional[str] = None,
                 skip_analytics: bool = False, skip_enrichment: bool = False,
                 force_all: bool = False, client=None, sleep=time.sleep) -> int:
    """
    Run every stage in order. Returns the number of failed integrity checks.
    Raises PipelineError only when the primary video file cannot be used.
    """
    source_dir = resolve_path(source_dir or cfg["source_dir"])
    registry = CityRegistry.from_config(engine, cfg, report)

    log.info(f"🚀 Core entities from {source_dir}")
    run_core(engine, source_dir, registry, cfg.get("known_locations"))

    if skip_analytics:
        log.info("⏭️ Analytics skipped (--skip-analytics)")
    else:
        run_analytics(engine, cfg, report, source_dir, crawler_dir)

    if skip_enrichment:
        log.info("⏭️ Enrichment skipped (--skip-enrichment)")
    else:
        enricher = build_enricher(engine, cfg, registry, report, client=client, sleep=sleep)
        if enricher is None:
            log.warning("⚠️ GeoNames username not configured; enrichment skipped")
            report.record_file("geonames", "skipped", reason="username not configured")
        else:
            enricher.run(force_all=force_all)

    return run_integrity_checks(engine, report)


# -----------------------
# CLI interface
# -----------------------
def parse_args(argv=None):
    p = argparse.ArgumentParser(
        description="Pedestrian video ingestion: cities, videos, pedestrians, analytics and enrichment"
    )
    p.add_argument("--config", type=str, default=None, help="YAML config path (default: config/$ENV.yaml)")
    p.add_argument("--source-dir", type=str, default=None, help="Override source_dir from config")
    p.add_argument("--crawler-dir", type=str, default=None, help="Override analytics.crawler_dir")
    p.add_argument("--skip-analytics", action="store_true", help="Do not load statistics files")
    p.add_argument("--skip-enrichment", action="store_true", help="Do not call GeoNames")
    p.add_argument("--force-all", action="store_true",
                   help="Enrich every city with any missing field, optional ones included")
    p.add_argument("--strict", action="store_true", help="Exit non-zero when integrity checks fail")
    p.add_argument("--report", type=str, default=None, help="Run report path (JSON; .md written alongside)")
    p.add_argument("--echo", action="store_true", help="Print SQL statements")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cfg = get_config(args.config)
    logging.basicConfig(
        level=cfg["log_level"],
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    report = RunReport(environment=cfg["environment"])
    failed_checks = 0
    try:
        engine = get_engine(cfg, echo=args.echo)
        failed_checks = run_pipeline(
            engine, cfg, report,
            source_dir=args.source_dir,
            crawler_dir=args.crawler_dir,
            skip_analytics=args.skip_analytics,
            skip_enrichment=args.skip_enrichment,
            force_all=args.force_all,
        )
    except (PipelineError, SQLAlchemyError) as e:
        log.exception(f"❌ Pipeline aborted: {e}")
        report.fatal = f"{type(e).__name__}: {e}"

    report.finish()
    report.write(args.report or cfg["report_path"])

    if not report.succeeded:
        return EXIT_FATAL
    if failed_checks and args.strict:
        log.error(f"❌ {failed_checks} integrity checks failed (--strict)")
        return EXIT_QUALITY
    log.info("✅ Ingestion pipeline completed.")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
