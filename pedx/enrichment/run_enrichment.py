#!/usr/bin/env python3
# =========================================
# 📄 File: pedx/enrichment/run_enrichment.py
# Purpose: Enrichment-only entry point (`pedx-enrich`)
# - `run`     : look up cities with missing critical data on GeoNames
# - `missing` : print which fields are missing, grouped by pattern
# =========================================

import sys
import json
import logging
import argparse

from sqlalchemy.exc import SQLAlchemyError

from config.config_loader import get_config
from pedx.db.engine import get_engine
from pedx.enrichment.city_enricher import CityEnricher, build_enricher
from pedx.etl.city_registry import CityRegistry
from pedx.report import RunReport

log = logging.getLogger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Fill missing city data from the GeoNames API")
    p.add_argument("--config", type=str, default=None, help="YAML config path (default: config/$ENV.yaml)")
    sub = p.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Enrich cities (default)")
    run.add_argument("--force-all", action="store_true",
                     help="Process every city with any missing field, optional ones included")
    run.add_argument("--report", type=str, default=None, help="Run report path (JSON)")

    sub.add_parser("missing", help="Report missing fields without calling GeoNames")

    argv = sys.argv[1:] if argv is None else list(argv)
    if not any(a in ("run", "missing", "-h", "--help") for a in argv):
        # `run` is the default command; it goes after the global --config option
        at = argv.index("--config") + 2 if "--config" in argv else 0
        argv.insert(at, "run")
    return p.parse_args(argv)


def print_missing_report(report_data) -> None:
    print("\n📊 Missing data report")
    print(f"   Cities: {report_data['total_cities']} ({report_data['complete_cities']} complete)")
    for field, count in report_data["field_counts"].items():
        print(f"   - {field}: {count}")
    for pattern, names in report_data["patterns"].items():
        shown = ", ".join(names[:5]) + (" ..." if len(names) > 5 else "")
        print(f"\n   [{len(names)}] missing {pattern}\n      {shown}")


def main(argv=None):
    args = parse_args(argv)
    cfg = get_config(args.config)
    logging.basicConfig(
        level=cfg["log_level"],
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    engine = get_engine(cfg)
    report = RunReport(environment=cfg["environment"])
    registry = CityRegistry.from_config(engine, cfg, report)

    if args.command == "missing":
        enricher = CityEnricher(engine, client=None, registry=registry, report=report)
        print_missing_report(enricher.missing_data_report())
        return 0

    enricher = build_enricher(engine, cfg, registry, report)
    if enricher is None:
        log.error("❌ GeoNames username not configured (set GEONAMES_USERNAME)")
        return 1
    try:
        outcomes = enricher.run(force_all=args.force_all)
    except SQLAlchemyError as e:
        log.exception(f"❌ Enrichment aborted: {e}")
        report.fatal = f"{type(e).__name__}: {e}"
        outcomes = {}
    finally:
        enricher.client.close()

    report.finish()
    if args.report:
        report.write(args.report)
    print(json.dumps({"outcomes": outcomes, "summary": report.enrichment_summary()}, indent=2))
    return 0 if report.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
