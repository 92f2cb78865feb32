# =========================================
# 📄 File: pedx/db/audit.py
# Purpose: Audit trail (one row per processed file and stage)
# =========================================

import logging

from pedx.db.models import ingest_audit

log = logging.getLogger(__name__)


def audit(engine, stage, source_file, start, end, rows, failed=0, success=True, error=None):
    """Record audit trail for every load using SQLAlchemy Core insert()."""
    with engine.begin() as conn:
        conn.execute(
            ingest_audit.insert().values(
                stage=stage,
                source_file=source_file,
                started_at=start,
                finished_at=end,
                rows_loaded=rows,
                rows_failed=failed,
                success=success,
                error=error,
            )
        )
    log.debug(f"Audit: {stage} {source_file} rows={rows} failed={failed} success={success}")
