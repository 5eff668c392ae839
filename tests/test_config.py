from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from folioledger.core.config import LedgerConfig, get_config, load_config, set_config


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    cfg, path = load_config()
    assert path is None
    assert cfg.default_matching_policy == "FIFO"
    assert cfg.seed_nav_per_unit == Decimal("1")
    assert cfg.stale_execution_minutes == 30


def test_yaml_file_and_env_override(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    (tmp_path / "folioledger.yaml").write_text(
        "ledger:\n  default_matching_policy: LIFO\n  max_price_staleness_days: 3\n  database_url: sqlite:///x.db\n"
    )
    monkeypatch.delenv("DATABASE_URL", raising=False)
    cfg, path = load_config()
    assert path == "folioledger.yaml"
    assert cfg.default_matching_policy == "LIFO"
    assert cfg.max_price_staleness_days == 3
    assert cfg.database_url == "sqlite:///x.db"

    monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
    cfg, _path = load_config()
    assert cfg.database_url == "sqlite:///env.db"


def test_invalid_values_rejected():
    with pytest.raises(PydanticValidationError):
        LedgerConfig(default_matching_policy="HIFO")
    with pytest.raises(PydanticValidationError):
        LedgerConfig(bulk_max_workers=0)


def test_set_config_replaces_cached(ledger_config):
    assert get_config() is ledger_config
    other = LedgerConfig(database_url="sqlite:///other.db")
    set_config(other)
    assert get_config().database_url == "sqlite:///other.db"
