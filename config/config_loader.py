# =========================================
# 📄 File: config/config_loader.py
# Purpose: Load YAML config (dev/prod), substitute ${ENV_VARS}, validate, and expose helpers
# =========================================

import os                      # Used to read ENV to pick dev/prod and to resolve ${VAR} placeholders
import re                      # Used to find and replace ${VAR} patterns inside YAML text
import sys                     # Used to exit early with a clear error message on invalid config
from typing import Dict, Any, Optional   # Type hints for better readability and tooling
import yaml                    # Safe YAML parsing (install: PyYAML)

CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))   # config/ folder, independent of CWD

# Defaults merged under whatever the YAML file provides
DEFAULTS: Dict[str, Any] = {
    "report_path": "logs/run_report.json",
    "geonames": {
        "base_url": "http://api.geonames.org",
        "max_rows": 10,
        "rate_limit_seconds": 1.0,
        "timeout_seconds": 10,
        "max_retries": 3,
        "min_score": 30,
    },
    "entity_resolution": {
        "corrections_file": os.path.join(CONFIG_DIR, "encoding_corrections.yaml"),
        "merge_conflict_min_videos": 50,
    },
    "analytics": {
        "replace_existing": True,
        "crawler_dir": None,
    },
    "known_locations": {},
}


def _substitute_env_placeholders(yaml_text: str) -> str:
    """
    Replace ${VAR} placeholders in YAML text with their environment variable values.
    If an env var is missing, mark it as <MISSING:VAR> to fail validation cleanly.
    """
    pattern = re.compile(r"\$\{([^}^{]+)\}")
    def repl(match):
        var_name = match.group(1)                              # Extract VAR name from ${VAR}
        return os.getenv(var_name, f"<MISSING:{var_name}>")    # Return env value or a sentinel
    return pattern.sub(repl, yaml_text)


def _load_yaml_file(path: str) -> Dict[str, Any]:
    """
    Read a YAML file from disk, perform ${VAR} substitution, and parse it to a dict.
    """
    if not os.path.exists(path):
        print(f"❌ Configuration file not found: {path}")
        sys.exit(1)

    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    substituted = _substitute_env_placeholders(raw)

    try:
        cfg = yaml.safe_load(substituted) or {}
    except yaml.YAMLError as e:
        print(f"❌ YAML parsing error in {path}: {e}")
        sys.exit(1)

    return cfg


def _merge_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fill optional sections from DEFAULTS (one level deep for dict sections)."""
    merged = dict(cfg)
    for key, default in DEFAULTS.items():
        if isinstance(default, dict):
            section = dict(default)
            section.update(cfg.get(key) or {})
            merged[key] = section
        elif merged.get(key) in (None, ""):
            merged[key] = default
    return merged


def resolve_path(path: str) -> str:
    """Relative paths that do not exist from the CWD are taken from the project root."""
    if os.path.isabs(path) or os.path.exists(path):
        return path
    return os.path.join(os.path.dirname(CONFIG_DIR), path)


def is_missing(value) -> bool:
    """True for empty values and unresolved <MISSING:...> placeholders."""
    return value in (None, "") or "MISSING:" in str(value)


def _validate_config(cfg: Dict[str, Any]) -> None:
    """
    Validate presence of required keys and ensure no <MISSING:...> placeholders remain
    where the pipeline cannot run without them.
    """
    required_top = ["environment", "log_level", "db_schema", "source_dir", "database", "geonames"]
    missing_top = [k for k in required_top if k not in cfg or cfg[k] in (None, "")]
    if missing_top:
        print(f"❌ Missing top-level config keys: {', '.join(missing_top)}")
        sys.exit(1)

    db = cfg.get("database") or {}
    # A full URL (e.g. sqlite:///local.db) replaces the individual fields
    if not is_missing(db.get("url")):
        return

    required_db = ["host", "port", "name", "user", "password"]
    missing_db = [f"database.{k}" for k in required_db if is_missing(db.get(k))]
    if missing_db:
        print(f"❌ Missing/invalid DB config keys: {', '.join(missing_db)}")
        sys.exit(1)

    # GeoNames username is optional: enrichment is skipped without it (warned at run time)


def get_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Public API: pick env from ENV (default 'dev') unless an explicit path is given,
    load YAML, merge defaults, validate, return dict.
    """
    if path is None:
        env = os.getenv("ENV", "dev").lower()                 # Choose 'dev' or 'prod' by ENV variable
        path = os.path.join(CONFIG_DIR, f"{env}.yaml")        # Build path like config/dev.yaml
    cfg = _merge_defaults(_load_yaml_file(path))
    _validate_config(cfg)
    return cfg


def build_db_url(cfg: Dict[str, Any]) -> str:
    """
    Helper to build a SQLAlchemy-friendly PostgreSQL URL string from cfg dict.
    """
    db = cfg["database"]
    if not is_missing(db.get("url")):                          # Explicit URL wins
        return str(db["url"])
    user = db["user"]
    pwd  = db["password"]
    host = db["host"]
    port = db["port"]
    name = db["name"]
    return f"postgresql+psycopg2://{user}:{pwd}@{host}:{port}/{name}"
