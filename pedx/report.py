# =========================================
# 📄 File: pedx/report.py
# Purpose: Operator-facing run summary (JSON + markdown) collecting counts,
#          per-file status, enrichment outcomes and every non-fatal failure
# =========================================

import os
import json
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


@dataclass
class StageStats:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    merged: int = 0
    reassigned: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class FailureRecord:
    stage: str
    entity: str
    key: str
    error_type: str
    reason: str


@dataclass
class RunReport:
    environment: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    stages: Dict[str, StageStats] = field(default_factory=dict)
    files: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failures: List[FailureRecord] = field(default_factory=list)
    enrichment: List[Dict[str, Any]] = field(default_factory=list)
    quality: Dict[str, Any] = field(default_factory=dict)
    fatal: Optional[str] = None

    def stage(self, name: str) -> StageStats:
        """Counters for one stage, created on first use."""
        return self.stages.setdefault(name, StageStats())

    def record_failure(self, stage: str, entity: str, key, error, counter: str = "failed") -> FailureRecord:
        """Log and keep a non-fatal failure; bumps the stage's `counter` (failed or skipped)."""
        if isinstance(error, BaseException):
            error_type, reason = type(error).__name__, str(error)
        else:
            error_type, reason = "Error", str(error)
        record = FailureRecord(stage, entity, str(key), error_type, reason)
        self.failures.append(record)
        stats = self.stage(stage)
        setattr(stats, counter, getattr(stats, counter) + 1)
        log.warning(f"[{stage}] {entity} {key}: {error_type}: {reason}")
        return record

    def record_file(self, source: str, status: str, **details) -> None:
        self.files[source] = {"status": status, **details}

    def record_enrichment(self, city_id: int, city: str, outcome: str, reason: Optional[str] = None) -> None:
        self.enrichment.append(
            {"city_id": city_id, "city": city, "outcome": outcome, "reason": reason}
        )

    def enrichment_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for item in self.enrichment:
            summary[item["outcome"]] = summary.get(item["outcome"], 0) + 1
        return summary

    def finish(self) -> "RunReport":
        self.finished_at = datetime.now(timezone.utc)
        return self

    @property
    def succeeded(self) -> bool:
        return self.fatal is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "succeeded": self.succeeded,
            "fatal": self.fatal,
            "stages": {name: asdict(stats) for name, stats in self.stages.items()},
            "files": self.files,
            "enrichment": {"summary": self.enrichment_summary(), "cities": self.enrichment},
            "quality": self.quality,
            "failures": [asdict(f) for f in self.failures],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, default=str)

    def write(self, path: str) -> str:
        """Write JSON to `path` and a markdown twin next to it; returns the JSON path."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_json())
        md_path = os.path.splitext(path)[0] + ".md"
        with open(md_path, "w", encoding="utf-8") as f:
            f.write(self.render_markdown())
        log.info(f"📝 Run report written to {path}")
        return path

    def render_markdown(self) -> str:
        lines = ["# Ingestion Run Report", ""]
        lines.append(f"- Started at: {self.started_at:%Y-%m-%d %H:%M:%SZ}")
        if self.finished_at:
            lines.append(f"- Finished at: {self.finished_at:%Y-%m-%d %H:%M:%SZ}")
        if self.environment:
            lines.append(f"- Environment: **{self.environment}**")
        lines.append(f"- Status: {'✅ completed' if self.succeeded else '❌ aborted: ' + str(self.fatal)}")
        lines.append("")

        lines.append("## Stages")
        lines.append("")
        lines.append("| stage | created | updated | unchanged | merged | reassigned | skipped | failed |")
        lines.append("|---|---|---|---|---|---|---|---|")
        for name, s in self.stages.items():
            lines.append(
                f"| {name} | {s.created} | {s.updated} | {s.unchanged} | {s.merged} "
                f"| {s.reassigned} | {s.skipped} | {s.failed} |"
            )
        lines.append("")

        if self.files:
            lines.append("## Files")
            lines.append("")
            for source, info in self.files.items():
                extra = ", ".join(f"{k}={v}" for k, v in info.items() if k != "status")
                lines.append(f"- `{source}`: {info['status']}" + (f" ({extra})" if extra else ""))
            lines.append("")

        if self.enrichment:
            lines.append("## Enrichment")
            lines.append("")
            for outcome, count in sorted(self.enrichment_summary().items()):
                lines.append(f"- {outcome}: {count}")
            lines.append("")

        if self.quality:
            lines.append("## Quality checks")
            lines.append("")
            for check, result in self.quality.items():
                lines.append(f"- {check}: {result}")
            lines.append("")

        lines.append("## Failures")
        lines.append("")
        if not self.failures:
            lines.append("- None 🎉")
        for f in self.failures:
            lines.append(f"- [{f.stage}] {f.entity} `{f.key}`: {f.error_type}: {f.reason}")
        lines.append("")
        return "\n".join(lines)
