import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from neuro.raptor.config.models import AppConfig
from neuro.raptor.exceptions import ConfigError

CONFIG_ENV_VAR = "NEURO_RAPTOR_CONFIG_PATH"


def find_config_file(cli_path: Path | None = None) -> Path | None:
    """Find the YAML config file using the search path.

    Search order:
    1. CLI-provided path (if given)
    2. NEURO_RAPTOR_CONFIG_PATH environment variable
    3. ./neuro.raptor.yaml (current directory)
    4. ~/.config/neuro.raptor/config.yaml (user config)

    Returns None if no config file is found.
    """
    if cli_path:
        if cli_path.exists():
            return cli_path
        raise FileNotFoundError(f"Config file not found: {cli_path}")

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path
        raise FileNotFoundError(f"Config file not found: {path}")

    cwd_config = Path.cwd() / "neuro.raptor.yaml"
    if cwd_config.exists():
        return cwd_config

    user_config = Path.home() / ".config" / "neuro.raptor" / "config.yaml"
    if user_config.exists():
        return user_config

    return None


def load_yaml_config(path: Path) -> dict:
    """Load and parse a YAML config file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


def load_config(path: Path | None = None) -> AppConfig:
    """Resolve, load and validate the configuration.

    Raises:
        ConfigError: If the file does not describe a valid configuration.
    """
    found = find_config_file(path)
    if found is None:
        return AppConfig()
    try:
        return AppConfig.model_validate(load_yaml_config(found))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {found}: {e}") from e


def generate_default_config() -> dict:
    """Generate a default YAML config structure."""
    return AppConfig().model_dump(mode="json", exclude={"storage": {"data_dir"}})
