"""Unit tests for budget configuration loading and validation."""

import os
from decimal import Decimal
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
import yaml

from budgetguard.core.config import (
    DEFAULT_CONFIG_PATH,
    BudgetConfig,
    BudgetConfigLoader,
    load_budget_config,
)
from budgetguard.core.errors import ConfigInvalid
from budgetguard.core.plans import PlanCode


def budget_data():
    """Raw policy equivalent to the packaged default."""
    return {
        "monthly_cap_cents": 15000,
        "reserve_percent": 0.20,
        "soft_stop_percent": 0.95,
        "rates": {
            "llm_tokens": {"standard": "0.001", "economy": "0.0005"},
            "tts_minutes": {"standard": "20", "economy": "8"},
            "image_generations": {"standard": "4", "economy": "2"},
            "render_minutes": {"standard": "5", "economy": "5"},
        },
        "plans": [
            {"code": "full", "llm_tokens": 120000, "tts_minutes": "12",
             "image_generations": 60, "render_minutes": "20", "variants": 2},
            {"code": "saver", "llm_tokens": 80000, "tts_minutes": "8",
             "image_generations": 30, "render_minutes": "15"},
            {"code": "minimal", "tier": "economy", "llm_tokens": 40000, "tts_minutes": "6",
             "image_generations": 10, "render_minutes": "10"},
            {"code": "fallback_dm", "tier": "economy", "llm_tokens": 10000,
             "image_generations": 4, "render_minutes": "6"},
        ],
    }


@pytest.fixture
def config_dir():
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def write_config(path: Path, data) -> None:
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)


def test_packaged_default_loads():
    """Test the packaged policy is valid."""
    config = load_budget_config()

    assert DEFAULT_CONFIG_PATH.exists()
    assert config.monthly_cap_cents == 15000
    assert config.reserve_cents() == 3000
    assert config.max_fallback_per_7eps == 2
    assert config.min_days_between_fallback == 5
    assert [plan.code for plan in config.ladder()] == list(PlanCode)


def test_month_reserve_after_lending():
    config = load_budget_config()

    assert config.reserve_floor_cents() == 1500
    assert config.month_reserve_cents() == 3000
    assert config.month_reserve_cents(800) == 2200
    assert config.month_reserve_cents(5000) == 1500

    no_share = config.model_copy(update={"reallocation_reserve_share": 0.0})
    assert no_share.reserve_floor_cents() == 3000
    assert no_share.month_reserve_cents(800) == 3000


def test_from_dict_applies_defaults():
    """Test guard and cadence constants default when omitted."""
    config = BudgetConfig.from_dict(budget_data())

    assert config.event_arc_priority_weight == 1.5
    assert config.default_shorts_per_week == 5
    assert config.min_shorts_per_week == 1
    assert config.fallback_uses_reserve is True
    assert config.outage_fallback_subject_to_quota is True
    assert config.rates["llm_tokens"]["standard"] == Decimal("0.001")


def test_plan_lookup():
    """Test lookup of a rung by code."""
    config = BudgetConfig.from_dict(budget_data())
    assert config.plan(PlanCode.MINIMAL).tier == "economy"


def test_reserve_rounds_up():
    """Test a fractional reserve is rounded up to a whole cent."""
    data = budget_data()
    data["monthly_cap_cents"] = 1001
    data["reserve_percent"] = 0.1

    assert BudgetConfig.from_dict(data).reserve_cents() == 101


def test_empty_config_is_invalid():
    with pytest.raises(ConfigInvalid, match="empty"):
        BudgetConfig.from_dict({})


def test_missing_rate_is_invalid():
    """Test a plan whose tier has no rate blocks loading."""
    data = budget_data()
    del data["rates"]["llm_tokens"]["economy"]

    with pytest.raises(ConfigInvalid, match="Missing rate"):
        BudgetConfig.from_dict(data)


def test_unknown_resource_is_invalid():
    data = budget_data()
    data["rates"]["gpu_hours"] = {"standard": "100"}

    with pytest.raises(ConfigInvalid, match="gpu_hours"):
        BudgetConfig.from_dict(data)


def test_negative_rate_is_invalid():
    data = budget_data()
    data["rates"]["tts_minutes"]["standard"] = "-1"

    with pytest.raises(ConfigInvalid, match="Negative rate"):
        BudgetConfig.from_dict(data)


def test_missing_rung_is_invalid():
    """Test every ladder rung must be defined exactly once."""
    data = budget_data()
    data["plans"] = [p for p in data["plans"] if p["code"] != "saver"]

    with pytest.raises(ConfigInvalid, match="exactly once"):
        BudgetConfig.from_dict(data)


def test_duplicate_rung_is_invalid():
    data = budget_data()
    data["plans"].append(dict(data["plans"][0]))

    with pytest.raises(ConfigInvalid, match="exactly once"):
        BudgetConfig.from_dict(data)


def test_richer_lower_rung_is_invalid():
    """Test a rung may not outscore the rung above it."""
    data = budget_data()
    data["plans"][2]["llm_tokens"] = 900000

    with pytest.raises(ConfigInvalid, match="minimal"):
        BudgetConfig.from_dict(data)


def test_unknown_field_is_invalid():
    data = budget_data()
    data["monthly_budget"] = 100

    with pytest.raises(ConfigInvalid):
        BudgetConfig.from_dict(data)


def test_cadence_floor_above_default_is_invalid():
    data = budget_data()
    data["min_shorts_per_week"] = 6

    with pytest.raises(ConfigInvalid, match="min_shorts_per_week"):
        BudgetConfig.from_dict(data)


def test_event_arcs_parsed():
    data = budget_data()
    data["event_arcs"] = [
        {"arc_id": "finale", "starts_at": "2026-10-10T00:00:00", "ends_at": "2026-10-17T00:00:00",
         "cadence_override": 7},
    ]
    config = BudgetConfig.from_dict(data)

    assert len(config.arc_registry()) == 1


def test_event_arc_window_must_be_ordered():
    data = budget_data()
    data["event_arcs"] = [
        {"arc_id": "broken", "starts_at": "2026-10-17T00:00:00", "ends_at": "2026-10-10T00:00:00"},
    ]

    with pytest.raises(ConfigInvalid, match="broken"):
        BudgetConfig.from_dict(data)


def test_load_missing_file(config_dir):
    with pytest.raises(ConfigInvalid, match="not found"):
        load_budget_config(str(config_dir / "missing.yaml"))


def test_load_invalid_yaml(config_dir):
    path = config_dir / "budget.yaml"
    path.write_text("monthly_cap_cents: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigInvalid, match="Invalid YAML"):
        load_budget_config(str(path))


def test_load_non_mapping(config_dir):
    path = config_dir / "budget.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigInvalid, match="mapping"):
        load_budget_config(str(path))


def test_loader_hot_reloads_on_change(config_dir):
    """Test the loader picks up edits between cycles."""
    path = config_dir / "budget.yaml"
    write_config(path, budget_data())
    loader = BudgetConfigLoader(str(path))

    first = loader.current()
    assert first.monthly_cap_cents == 15000
    assert loader.current() is first

    data = budget_data()
    data["monthly_cap_cents"] = 20000
    write_config(path, data)
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert loader.current().monthly_cap_cents == 20000


def test_loader_rejects_invalid_reload(config_dir):
    """Test an invalid edit blocks decisions instead of keeping stale policy."""
    path = config_dir / "budget.yaml"
    write_config(path, budget_data())
    loader = BudgetConfigLoader(str(path))
    loader.current()

    data = budget_data()
    del data["rates"]["render_minutes"]
    write_config(path, data)
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    with pytest.raises(ConfigInvalid):
        loader.current()
    with pytest.raises(ConfigInvalid):
        loader.current()
