import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, cast

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = "config.yaml"
ENV_PREFIX = "CENSUS_DB_"

ACS_VARIABLES_LINK_PATTERN = r"^https?://api\.census\.gov/data/\d{4}/acs/acs\d/variables\.json$"

DEFAULT_SECTIONS: Dict[str, Dict[str, Any]] = {
    "extractor_settings": {
        "rate_limit_seconds": 1.0,
        "retries": 3,
        "backoff_factor": 0.5,
        "timeout": 30,
    },
    "cache": {
        "enabled": True,
        "dir": "./cache",
    },
    "ingest": {
        "index_url": "https://api.census.gov/data.json",
        "variables_link_pattern": ACS_VARIABLES_LINK_PATTERN,
        "workers": 1,
        "batch_size": 5000,
    },
}


def _coerce(env_value: str, current: Any) -> Any:
    """Casts an environment value to the type of the value it overrides."""
    if isinstance(current, bool):
        return env_value.lower() in ["true", "1", "t", "y", "yes"]
    if current is None:
        return env_value
    try:
        return type(current)(env_value)
    except (ValueError, TypeError):
        return env_value


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads configuration from a YAML file and overrides with environment variables.

    Database settings can be overridden by environment variables with the prefix
    CENSUS_DB_, e.g. `CENSUS_DB_HOST` overrides `database.host`. A full libpq
    connection string in `DATABASE_URL` is passed to the driver as `dsn` and
    takes precedence over the individual settings.

    Args:
        path: The path to the config file. If None, looks in the project root.

    Returns:
        A dictionary containing the configuration.

    Raises:
        FileNotFoundError: If the configuration file cannot be found.
        ValueError: If neither a password nor DATABASE_URL is provided.
    """
    if path:
        config_path = Path(path)
    else:
        # src/py_load_census/config.py -> src/py_load_census -> src -> project_root
        project_root = Path(__file__).parent.parent.parent
        config_path = project_root / CONFIG_FILENAME

    load_dotenv()

    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found at {config_path}")

    with open(config_path, "r") as f:
        config = cast(Dict[str, Any], yaml.safe_load(f) or {})

    database = config.setdefault("database", {})
    for key in list(database.keys()) + ["password"]:
        database.setdefault(key, None)
        env_var = f"{ENV_PREFIX}{key.upper()}"
        if env_var in os.environ:
            env_value = os.environ[env_var]
            print_val = "****" if key == "password" else env_value
            logging.info(f"Overriding config '{key}' with value from environment variable {env_var}: {print_val}")
            database[key] = _coerce(env_value, database[key])

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        logging.info("Using the connection string from DATABASE_URL.")
        database["dsn"] = database_url

    log_level_env = os.getenv("CENSUS_LOG_LEVEL")
    if log_level_env:
        logging.info(f"Overriding log level with CENSUS_LOG_LEVEL: {log_level_env}")
        config.setdefault("logging", {})["level"] = log_level_env.upper()

    # Settings from the file take precedence over the defaults.
    for section, defaults in DEFAULT_SECTIONS.items():
        config[section] = {**defaults, **(config.get(section) or {})}

    logging.info(f"Extractor settings loaded: {config['extractor_settings']}")

    if not database.get("password") and not database.get("dsn"):
        raise ValueError(
            "Database password not provided. "
            "Set the CENSUS_DB_PASSWORD or DATABASE_URL environment variable."
        )

    return config
