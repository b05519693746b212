"""Configuration management for Nomina Calc.

Configuration is split into two files:

1. settings.json - Machine-specific settings
   - data_dir: where formula versions and audit entries are stored
   - default_rounding_method / default_rounding_precision

2. profile.yaml - Company configuration
   - companies.<id>.rounding_method: ROUND, FLOOR, CEIL, HALF_UP, HALF_EVEN
   - companies.<id>.rounding_precision: decimal places
   - companies.<id>.risk_class: IMSS work-risk class (CLASE_I..CLASE_V)

Config directory resolution:
1. NOMINA_CALC_CONFIG_PATH environment variable (if set)
2. ~/.config/nomina-calc/ (XDG_CONFIG_HOME fallback)

Data path resolution:
1. settings.json "data_dir" key
2. XDG_DATA_HOME/nomina-calc/ or ~/.local/share/nomina-calc/
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml


APP_NAME = "nomina-calc"
SETTINGS_FILENAME = "settings.json"
PROFILE_FILENAME = "profile.yaml"
FISCAL_TABLES_DIRNAME = "fiscal-tables"


def get_config_dir() -> Path:
    """Get the configuration directory path.

    Resolution order:
    1. NOMINA_CALC_CONFIG_PATH environment variable
    2. ~/.config/nomina-calc/ (XDG_CONFIG_HOME)

    Returns:
        Path to the configuration directory
    """
    env_path = os.environ.get("NOMINA_CALC_CONFIG_PATH")
    if env_path:
        return Path(env_path)

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
    return Path(xdg_config_home) / APP_NAME


def get_settings_path() -> Path:
    """Get the path to settings.json (may not exist yet)."""
    return get_config_dir() / SETTINGS_FILENAME


def load_settings() -> dict:
    """Load machine-specific settings from settings.json.

    Returns:
        Settings dictionary (empty dict if file doesn't exist)
    """
    settings_file = get_settings_path()

    if not settings_file.exists():
        return {}

    with open(settings_file, "r") as f:
        return json.load(f)


def save_settings(settings: dict) -> Path:
    """Save machine-specific settings to settings.json.

    Args:
        settings: Settings dictionary to save

    Returns:
        Path to the saved settings file
    """
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)

    settings_file = config_dir / SETTINGS_FILENAME

    with open(settings_file, "w") as f:
        json.dump(settings, f, indent=2)

    return settings_file


def get_setting(key: str, default: Any = None) -> Any:
    """Get a setting value from settings.json."""
    settings = load_settings()
    return settings.get(key, default)


def set_setting(key: str, value: Any) -> Path:
    """Set a setting value in settings.json.

    Returns:
        Path to the saved settings file
    """
    settings = load_settings()
    settings[key] = value
    return save_settings(settings)


def get_profile_path() -> Path:
    """Get the path to profile.yaml in the config directory."""
    return get_config_dir() / PROFILE_FILENAME


def load_profile() -> dict:
    """Load company configuration from profile.yaml.

    Returns:
        Profile dictionary (empty dict if the file doesn't exist)
    """
    profile_path = get_profile_path()

    if not profile_path.exists():
        return {}

    with open(profile_path, "r") as f:
        return yaml.safe_load(f) or {}


def save_profile(profile: dict, path: Optional[Path] = None) -> Path:
    """Save company configuration to profile.yaml.

    Args:
        profile: Profile dictionary to save
        path: Optional custom path (uses default if not specified)

    Returns:
        Path to the saved profile file
    """
    if path is None:
        path = get_profile_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(profile, f, default_flow_style=False, sort_keys=False)

    return path


def get_profile_value(key: str, default: Any = None) -> Any:
    """Get a profile value by dot-notation key.

    Args:
        key: Dot-notation key (e.g., "companies.acme.rounding_method")
        default: Default value if key not found

    Returns:
        Profile value or default
    """
    profile = load_profile()

    value = profile
    for part in key.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return default

    return value


def set_profile_value(key: str, value: Any) -> Path:
    """Set a profile value by dot-notation key.

    Returns:
        Path to the saved profile file
    """
    profile = load_profile()

    parts = key.split(".")
    current = profile

    # Navigate/create nested structure
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]

    current[parts[-1]] = value

    return save_profile(profile)


def get_company_config(company_id: str) -> dict:
    """Get the profile section for one company (empty dict if absent)."""
    companies = load_profile().get("companies") or {}
    return dict(companies.get(company_id) or {})


# =============================================================================
# XDG path helpers
# =============================================================================

def get_data_path() -> Path:
    """Get the data directory path.

    Uses settings.json "data_dir" when set, else XDG_DATA_HOME/nomina-calc/.

    Returns:
        Path to the data directory (created if doesn't exist)
    """
    custom = get_setting("data_dir")
    if custom:
        data_path = Path(custom).expanduser()
    else:
        xdg_data_home = os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")
        data_path = Path(xdg_data_home) / APP_NAME
    data_path.mkdir(parents=True, exist_ok=True)
    return data_path


def get_user_fiscal_tables_dir() -> Path:
    """Get the directory holding installation-specific fiscal table overrides."""
    return get_config_dir() / FISCAL_TABLES_DIRNAME


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


def check_path_key(value: str, label: str) -> str:
    """Validate an identifier used as a file or directory name.

    Raises:
        ValueError: If the value is empty, contains a path separator or
            characters outside letters, digits, '.', '_' and '-'
    """
    if not value or not _SAFE_KEY.match(value) or value in (".", ".."):
        raise ValueError(f"Invalid {label}: {value!r}")
    return value
