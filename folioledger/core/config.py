from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class LedgerConfig(BaseModel):
    database_url: str = "sqlite:///./data/folioledger.db"
    default_matching_policy: Literal["FIFO", "LIFO"] = "FIFO"
    seed_nav_per_unit: Decimal = Decimal("1")
    max_price_staleness_days: Optional[int] = Field(default=None, ge=0)
    volatility_window: int = Field(default=30, ge=2)
    stale_execution_minutes: int = Field(default=30, ge=1)
    bulk_max_workers: int = Field(default=1, ge=1)
    log_level: str = "INFO"


def _candidate_paths() -> list[Path]:
    paths = [Path("folioledger.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".folioledger" / "folioledger.yaml")
    return paths


def _apply_env(cfg: LedgerConfig) -> LedgerConfig:
    updates: dict[str, object] = {}
    if os.environ.get("DATABASE_URL"):
        updates["database_url"] = os.environ["DATABASE_URL"]
    if os.environ.get("FOLIOLEDGER_LOG_LEVEL"):
        updates["log_level"] = os.environ["FOLIOLEDGER_LOG_LEVEL"]
    return cfg.model_copy(update=updates) if updates else cfg


def load_config() -> tuple[LedgerConfig, Optional[str]]:
    for p in _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            cfg = LedgerConfig.model_validate(data.get("ledger") or data)
            return _apply_env(cfg), str(p)
    return _apply_env(LedgerConfig()), None


_CONFIG: LedgerConfig | None = None


def get_config() -> LedgerConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG, _path = load_config()
    return _CONFIG


def set_config(cfg: LedgerConfig | None) -> None:
    global _CONFIG
    _CONFIG = cfg
