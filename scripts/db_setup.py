#!/usr/bin/env python3
# =========================================
# 📄 File: scripts/db_setup.py
# Purpose: Create the pedestrian-video database schema and views, using YAML config loader
# =========================================

import os
import sys
import logging
import argparse
from contextlib import contextmanager

from sqlalchemy import text

from config.config_loader import get_config, resolve_path
from pedx.db.engine import get_engine
from pedx.db.models import Base

log = logging.getLogger(__name__)

TABLE_NAMES = ", ".join(Base.metadata.tables)


# -----------------------
# Engine / helpers
# -----------------------
@contextmanager
def begin_conn(engine, schema: str = "public"):
    """
    Transaction whose plain-SQL statements resolve unqualified names in `schema`.
    """
    with engine.begin() as conn:
        if schema.lower() != "public" and conn.dialect.name == "postgresql":
            conn.execute(text(f'SET LOCAL search_path TO "{schema}", public'))
        yield conn


def ensure_schema(engine, schema: str):
    """
    Ensure the schema defined in the config exists.
    """
    if schema.lower() != "public":
        log.info(f"Ensuring schema '{schema}' exists…")
        with engine.begin() as conn:
            conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
    else:
        log.info("Using default schema 'public'.")


def drop_tables(engine, schema: str = "public"):
    """
    Drop all tables if the --recreate flag is used (views first, they depend on them).
    """
    log.warning(f"Dropping tables ({TABLE_NAMES})…")
    with begin_conn(engine, schema) as conn:
        for view in ("video_pedestrian_summary", "city_insight"):
            conn.execute(text(f"DROP VIEW IF EXISTS {view}"))
    Base.metadata.drop_all(engine, checkfirst=True)


def create_tables(engine):
    """
    Create all tables if they don't exist yet.
    """
    log.info(f"Creating tables ({TABLE_NAMES})…")
    Base.metadata.create_all(engine, checkfirst=True)


# -----------------------
# View creation using SQL file
# -----------------------
def split_sql(raw_sql: str):
    """Statements of a SQL file, comment lines removed, split on semicolons."""
    clean_sql = [line for line in raw_sql.splitlines() if not line.strip().startswith("--")]
    return [q.strip() for q in "\n".join(clean_sql).split(";") if q.strip()]


def create_views_from_file(engine, sql_file_path="sql/analytics_views.sql", schema: str = "public"):
    """
    Reads the views SQL file and executes each statement in one transaction.
    """
    sql_file_path = resolve_path(sql_file_path)
    if not os.path.exists(sql_file_path):
        log.error(f"SQL file not found: {sql_file_path}")
        return 0

    log.info(f"Loading views SQL from {sql_file_path}")
    with open(sql_file_path, "r", encoding="utf-8") as f:
        queries = split_sql(f.read())

    with begin_conn(engine, schema) as conn:
        for i, query in enumerate(queries, 1):
            conn.execute(text(query))
            log.info(f"Executed SQL block {i}")

    log.info(f"✅ {len(queries)} view statements executed successfully.")
    return len(queries)


# -----------------------
# CLI interface
# -----------------------
def parse_args(argv=None):
    """
    Command-line interface options for flexibility:
    --config    : explicit YAML config path
    --echo      : print SQL statements being executed
    --recreate  : drop and recreate all tables
    --sql-file  : specify the views SQL file
    """
    p = argparse.ArgumentParser(description="Pedestrian video DB setup (YAML config enabled)")
    p.add_argument("--config", type=str, default=None, help="YAML config path (default: config/$ENV.yaml)")
    p.add_argument("--echo", action="store_true", help="Print SQL statements")
    p.add_argument(
        "--recreate",
        action="store_true",
        help="Drop and recreate all tables before running",
    )
    p.add_argument(
        "--sql-file",
        type=str,
        default="sql/analytics_views.sql",
        help="Path to views SQL file",
    )
    return p.parse_args(argv)


def main(argv=None):
    """
    Main execution flow:
    - Reads config
    - Creates engine
    - Ensures schema
    - Creates/drops tables
    - Creates views
    """
    args = parse_args(argv)
    cfg = get_config(args.config)
    logging.basicConfig(
        level=cfg["log_level"],
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    schema = cfg["db_schema"]
    try:
        engine = get_engine(cfg, echo=args.echo)
        ensure_schema(engine, schema)

        if args.recreate:
            drop_tables(engine, schema)

        create_tables(engine)
        create_views_from_file(engine, args.sql_file, schema)

        log.info("✅ Database setup complete.")
        return 0
    except Exception as e:
        log.exception(f"❌ DB setup failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
