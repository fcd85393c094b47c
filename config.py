"""
Central configuration for the procurement ledger.

All paths, batch sizes, and thresholds are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/ledger_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_OUTPUT_DIR = PROJECT_ROOT / "output"
DEFAULT_DB_PATH    = DEFAULT_OUTPUT_DIR / "ledger.db"
DEFAULT_BACKUP_DIR = PROJECT_ROOT / "backups"

# Environment variable for each overridable setting; an env value beats the
# JSON overlay, so keys listed here are skipped when the variable is set.
_ENV_KEYS = {
    "ledger_batch_size":        "LEDGER_BATCH_SIZE",
    "ledger_key_strategy":      "LEDGER_KEY_STRATEGY",
    "default_location_id":      "DEFAULT_LOCATION_ID",
    "approval_code_length":     "APPROVAL_CODE_LENGTH",
    "transaction_max_attempts": "TRANSACTION_MAX_ATTEMPTS",
}


@dataclass
class Config:
    # --- Storage ---
    output_dir: Path = field(default_factory=lambda: DEFAULT_OUTPUT_DIR)
    db_path:    Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )
    backup_dir: Path = field(
        default_factory=lambda: Path(os.getenv("BACKUP_DIR", str(DEFAULT_BACKUP_DIR)))
    )

    # --- Store limits ---
    max_batch_operations: int = 500   # Hard ceiling per batch_write call
    max_in_filter_values: int = 10    # Max values in one "in" filter
    transaction_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))
    )
    transaction_retry_delay: float = 0.05  # Seconds, multiplied by attempt number

    # --- Ledger reconciliation ---
    ledger_batch_size: int = field(
        default_factory=lambda: int(os.getenv("LEDGER_BATCH_SIZE", "400"))
    )
    # Stays below max_batch_operations so a chunk always fits in one batch.
    ledger_key_strategy: str = field(
        default_factory=lambda: os.getenv("LEDGER_KEY_STRATEGY", "preload")
    )
    # preload      -> load the whole (order, item) key set once per backfill
    # point_lookup -> query the ledger for each candidate order instead

    # --- Reception ---
    default_location_id: str = field(
        default_factory=lambda: os.getenv("DEFAULT_LOCATION_ID", "main-warehouse")
    )

    # --- Approval ---
    approval_code_length: int = field(
        default_factory=lambda: int(os.getenv("APPROVAL_CODE_LENGTH", "6"))
    )

    # --- Reporting ---
    top_materials_limit: int = 10     # Rows in the top-by-amount / top-by-quantity lists
    search_result_limit: int = 15
    search_fuzzy_threshold: int = 70  # Minimum rapidfuzz score (0-100) for fuzzy hits

    # --- Backups ---
    backup_retention_count: int = 7   # Newest archives kept by rotate_backups

    # --- Travel expenses ---
    min_reason_length: int = 5        # Rejection / cancellation reasons

    def __post_init__(self) -> None:
        self._load_settings_file()
        if self.ledger_batch_size > self.max_batch_operations:
            logger.warning(
                "ledger_batch_size=%d exceeds the store ceiling; clamping to %d",
                self.ledger_batch_size, self.max_batch_operations,
            )
            self.ledger_batch_size = self.max_batch_operations

    def _load_settings_file(self) -> None:
        """Overlay runtime-tunable settings from ledger_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "ledger_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "ledger_batch_size":        int,
            "ledger_key_strategy":      str,
            "default_location_id":      str,
            "approval_code_length":     int,
            "transaction_max_attempts": int,
            "top_materials_limit":      int,
            "search_result_limit":      int,
            "search_fuzzy_threshold":   int,
            "min_reason_length":        int,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _ENV_KEYS and os.getenv(_ENV_KEYS[key]) is not None:
                    continue
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load ledger_settings.json: %s", exc)

    def ensure_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
