"""Tests for settings, company profile and path helpers."""

import pytest

from nominacalc.sdk.config import (
    check_path_key,
    get_company_config,
    get_config_dir,
    get_data_path,
    get_profile_value,
    get_setting,
    set_profile_value,
    set_setting,
)


class TestConfigPaths:
    """Tests for config and data directory resolution."""

    def test_env_var_sets_config_dir(self, isolated_env):
        assert get_config_dir() == isolated_env["config_dir"]

    def test_data_dir_from_settings(self, isolated_env):
        assert get_data_path() == isolated_env["data_dir"]

    def test_xdg_data_default(self, isolated_env, tmp_path, monkeypatch):
        (isolated_env["config_dir"] / "settings.json").write_text("{}")
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
        path = get_data_path()
        assert path == tmp_path / "xdg" / "nomina-calc"
        assert path.is_dir()


class TestSettingsAndProfile:
    """Tests for reading and writing configuration values."""

    def test_setting_round_trip(self, isolated_env):
        set_setting("default_rounding_method", "FLOOR")
        assert get_setting("default_rounding_method") == "FLOOR"
        assert get_setting("data_dir") == str(isolated_env["data_dir"])

    def test_profile_dot_keys(self, isolated_env):
        set_profile_value("companies.acme.risk_class", "CLASE_III")
        set_profile_value("companies.acme.rounding_precision", 3)

        assert get_profile_value("companies.acme.risk_class") == "CLASE_III"
        assert get_profile_value("companies.other.risk_class", "none") == "none"
        assert get_company_config("acme") == {"risk_class": "CLASE_III", "rounding_precision": 3}
        assert get_company_config("other") == {}


class TestCheckPathKey:
    """Tests for identifiers used as file names."""

    @pytest.mark.parametrize("value", ["acme", "P001", "2025-01-B1-E001", "a.b_c"])
    def test_accepts(self, value):
        assert check_path_key(value, "id") == value

    @pytest.mark.parametrize("value", ["", ".", "..", "../x", "a/b", "a\\b", "a b"])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            check_path_key(value, "id")
