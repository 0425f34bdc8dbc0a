"""
Runtime configuration for the record lifecycle core.
All settings come from environment variables with safe defaults.
"""

import os
from pathlib import Path

# Storage configuration
DB_PATH = os.getenv("DB_PATH", "./data/slabtrack.db")
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sqlite")  # sqlite|memory

# Buffered persistence (debounced flush)
AUTOSAVE_ENABLED = os.getenv("AUTOSAVE_ENABLED", "true").lower() == "true"
AUTOSAVE_DELAY_SEC = float(os.getenv("AUTOSAVE_DELAY_SEC", "1.0"))

# Audit trail retention
AUDIT_MAX_ENTRIES_PER_RECORD = int(os.getenv("AUDIT_MAX_ENTRIES_PER_RECORD", "100"))

# Maintenance routines (compliance re-check, envelope integrity)
MAINTENANCE_ENABLED = os.getenv("MAINTENANCE_ENABLED", "true").lower() == "true"

# Business thresholds that are not part of the configurable rule set
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))
HIGH_COST_THRESHOLD = float(os.getenv("HIGH_COST_THRESHOLD", "50000"))

# Persisted envelope versions
SCHEMA_VERSION = "1.0.0"
CONFIG_VERSION = "1.0.0"

# Storage keys
SCHEMA_KEY = "inventory_schema"
AUDIT_KEY = "inventory_audit_log"
CONFIG_KEY = "inventory_config"
AUTOSAVE_KEY = "inventory_auto_save"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_autosave_delay():
    """Get debounce delay in seconds."""
    return AUTOSAVE_DELAY_SEC


def get_audit_cap():
    """Get the per-record audit retention cap."""
    return AUDIT_MAX_ENTRIES_PER_RECORD


def get_storage(db_path: str = None):
    """Get configured storage adapter implementation."""
    from .storage import MemoryStorage, SqliteStorage

    if STORAGE_BACKEND == "memory":
        return MemoryStorage()
    return SqliteStorage(db_path or DB_PATH)


def validate_store_config():
    """Validate store configuration and return any issues."""
    issues = []

    if STORAGE_BACKEND not in ["sqlite", "memory"]:
        issues.append(f"STORAGE_BACKEND must be sqlite|memory, got {STORAGE_BACKEND}")

    if AUTOSAVE_DELAY_SEC < 0:
        issues.append("AUTOSAVE_DELAY_SEC must be >= 0")

    if AUDIT_MAX_ENTRIES_PER_RECORD < 1:
        issues.append("AUDIT_MAX_ENTRIES_PER_RECORD must be >= 1")

    if LOW_STOCK_THRESHOLD < 0:
        issues.append("LOW_STOCK_THRESHOLD must be >= 0")

    if HIGH_COST_THRESHOLD <= 0:
        issues.append("HIGH_COST_THRESHOLD must be > 0")

    return issues
