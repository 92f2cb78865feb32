# =========================================
# 📄 File: pedx/db/engine.py
# Purpose: Engine construction (masked URL logging, schema mapping) and
#          dialect-neutral INSERT ... ON CONFLICT helpers
# =========================================

import logging
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from config.config_loader import build_db_url

log = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_engine(engine, schema: str = "public"):
    """
    Apply per-dialect settings to an existing engine:
      - SQLite: enforce foreign keys on every new connection.
      - PostgreSQL: map schema-less tables onto `schema` when it is not public.
    """
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    elif schema and schema.lower() != "public":
        engine = engine.execution_options(schema_translate_map={None: schema})
    return engine


def get_engine(cfg: Dict[str, Any], echo: bool = False):
    """
    Create SQLAlchemy engine using the connection string built from YAML config.
    """
    url = build_db_url(cfg)

    # Mask password for safe logging
    pwd = str(cfg.get("database", {}).get("password") or "")
    safe_url = url.replace(pwd, "***") if pwd else url
    log.info(f"Connecting to database at: {safe_url}")

    engine = create_engine(url, echo=echo, pool_pre_ping=True, future=True)
    return configure_engine(engine, cfg.get("db_schema", "public"))


def dialect_insert(conn, table):
    """INSERT construct supporting on_conflict_do_update/returning for the bound dialect."""
    if conn.dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)
