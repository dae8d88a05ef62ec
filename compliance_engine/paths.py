"""
Where the engine keeps its files.

One home directory holds both installation files:

    <home>/config/engine.yaml   engine settings
    <home>/data/assets.db       asset register (and aggregate_records)

The home defaults to ~/.compliance_engine and moves with
COMPLIANCE_ENGINE_HOME. COMPLIANCE_ENGINE_DB and COMPLIANCE_ENGINE_CONFIG point
the register or the settings file somewhere else individually.
"""

import os
from pathlib import Path

APP_ENV_HOME = "COMPLIANCE_ENGINE_HOME"
APP_ENV_DB = "COMPLIANCE_ENGINE_DB"
APP_ENV_CONFIG = "COMPLIANCE_ENGINE_CONFIG"

REGISTER_FILENAME = "assets.db"
CONFIG_FILENAME = "engine.yaml"


def _env_path(var: str) -> Path | None:
    value = os.environ.get(var)
    return Path(value).expanduser().resolve() if value else None


def _home_subdir(name: str) -> Path:
    d = app_home() / name
    d.mkdir(parents=True, exist_ok=True)
    return d


def project_root() -> Path:
    """Checkout root: compliance_engine/, api/, cli/ and the example config/."""
    return Path(__file__).parent.parent.resolve()


def example_config() -> Path:
    """The annotated engine.yaml shipped with the project."""
    return project_root() / "config" / CONFIG_FILENAME


def app_home() -> Path:
    return _env_path(APP_ENV_HOME) or (Path.home() / ".compliance_engine").resolve()


def config_dir() -> Path:
    return _home_subdir("config")


def data_dir() -> Path:
    return _home_subdir("data")


def config_file() -> Path:
    """
    Engine settings file. May not exist; load_settings() then uses defaults.

    Resolution order:
    1. COMPLIANCE_ENGINE_CONFIG
    2. <home>/config/engine.yaml
    """
    return _env_path(APP_ENV_CONFIG) or config_dir() / CONFIG_FILENAME


def db_path() -> Path:
    """
    Asset register the entity store reads and aggregate records are written to.

    Resolution order:
    1. COMPLIANCE_ENGINE_DB (its directory is created if missing)
    2. <home>/data/assets.db
    """
    override = _env_path(APP_ENV_DB)
    if override is None:
        return data_dir() / REGISTER_FILENAME
    override.parent.mkdir(parents=True, exist_ok=True)
    return override
