"""Shared fixtures for unit tests."""

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from nominacalc.sdk.schemas import EmployeeSnapshot, PeriodSnapshot


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point config and data directories at a temp dir."""
    config_dir = tmp_path / "config"
    data_dir = tmp_path / "data"
    config_dir.mkdir()
    data_dir.mkdir()

    monkeypatch.setenv("NOMINA_CALC_CONFIG_PATH", str(config_dir))

    settings = {"data_dir": str(data_dir)}
    (config_dir / "settings.json").write_text(json.dumps(settings))

    return {
        "config_dir": config_dir,
        "data_dir": data_dir,
    }


@pytest.fixture
def ticking_clock():
    """Clock that advances one second per call, for deterministic ordering."""
    state = {"now": datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)}

    def clock():
        state["now"] += timedelta(seconds=1)
        return state["now"]

    return clock


@pytest.fixture
def employee():
    return EmployeeSnapshot(
        id="E001",
        employee_number="001",
        rfc="GODE561231GR8",
        base_salary="15000",
        daily_salary="500",
        sbc="520",
        hire_date=date(2022, 3, 1),
    )


@pytest.fixture
def biweekly_period():
    return PeriodSnapshot(
        id="2025-01-B1",
        period_type="BIWEEKLY",
        year=2025,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 1, 15),
        payment_date=date(2025, 1, 15),
    )
