"""
Central configuration for the work order engine.

Storage location, tax rate and the actor recorded in the audit log are
defined here.  Override via environment variables or by passing a Config
instance directly.

Settings priority (highest wins):
  1. config/engine_settings.json  (admin-editable, persisted)
  2. Environment variables
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

DEFAULT_DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH  = DEFAULT_DATA_DIR / "orders.db"


@dataclass
class Config:
    # --- Storage ---
    db_path: Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    # --- Pricing ---
    # Percentage applied to the parts + labor subtotal (8 means 8%).
    tax_rate_percent: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("TAX_RATE", "8"))
    )

    # --- Audit ---
    actor: str = field(
        default_factory=lambda: os.getenv("ORDER_ACTOR", "system")
    )

    # --- API ---
    api_list_limit: int = 500     # Max orders returned by GET /api/orders

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from engine_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "engine_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "tax_rate_percent": lambda v: Decimal(str(v)),
            "actor":            str,
            "api_list_limit":   int,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except Exception as exc:
            logger.warning("Failed to load engine_settings.json: %s", exc)

    def ensure_data_dir(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
