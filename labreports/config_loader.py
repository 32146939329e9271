"""Configuration loading utilities for the lab report delivery pipeline.

Provides a centralized way to load and validate the parameters.yaml
configuration file across all pipeline modules.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

SCRIPT_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = SCRIPT_DIR.parent / "config" / "parameters.yaml"

# Environment variables that override secrets kept out of parameters.yaml.
ENV_OVERRIDES = {
    "LABREPORTS_DATABASE_USER": ("database", "user"),
    "LABREPORTS_DATABASE_PASSWORD": ("database", "password"),
    "LABREPORTS_DATABASE_CONNECT_STRING": ("database", "connect_string"),
    "BIRD_ACCESS_KEY": ("bird", "access_key"),
}

POSITIVE_NUMBERS = {
    "processing": (
        "batch_interval_seconds",
        "lock_stale_seconds",
        "convergence_timeout_seconds",
        "convergence_poll_seconds",
        "mark_processed_timeout_seconds",
    ),
    "reports": ("timeout_seconds",),
    "merge": ("timeout_seconds",),
    "whatsapp": (
        "presign_timeout_seconds",
        "upload_timeout_seconds",
        "send_timeout_seconds",
    ),
}


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load and parse the parameters.yaml configuration file.

    Applies environment overrides for secrets, then validates the result.
    Raises clear exceptions if validation fails, enabling fail-fast behavior
    for infrastructure errors.

    Parameters
    ----------
    config_path : Path, optional
        Path to the configuration file. If not provided, uses the default
        location (config/parameters.yaml in the project root).

    Returns
    -------
    Dict[str, Any]
        Parsed and validated YAML configuration as a nested dictionary.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    yaml.YAMLError
        If the configuration file is invalid YAML.
    ValueError
        If the configuration fails validation (see validate_config).
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    apply_env_overrides(config)
    validate_config(config)
    return config


def apply_env_overrides(config: Dict[str, Any], environ=None) -> None:
    """Replace secret values with environment variables when they are set."""
    environ = os.environ if environ is None else environ
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            config.setdefault(section, {})[key] = value


def validate_config(config: Dict[str, Any]) -> None:
    """Validate the entire configuration for consistency and required values.

    Parameters
    ----------
    config : Dict[str, Any]
        Configuration dictionary (result of load_config).

    Raises
    ------
    ValueError
        If required configuration is missing or invalid.

    Notes
    -----
    **Validation checks:**

    - **Database:** database.user and database.connect_string must be
      non-empty strings; the report engine logs in with the same credentials
    - **Paths:** paths.results_folder and paths.reports_path are required
    - **Timings:** every interval and timeout must be a positive number
    - **Reports:** success_exit_codes must be a list of integers
    - **Bird:** workspace, channel and template identifiers are required
      whenever bird.access_key is set
    """
    database = config.get("database", {})
    for key, variable in (
        ("user", "LABREPORTS_DATABASE_USER"),
        ("connect_string", "LABREPORTS_DATABASE_CONNECT_STRING"),
    ):
        value = database.get(key)
        if not value or not isinstance(value, str):
            raise ValueError(
                f"database.{key} is not specified. Define it in config/parameters.yaml "
                f"or set {variable}."
            )

    pool_min = database.get("pool_min", 1)
    pool_max = database.get("pool_max", 5)
    if not isinstance(pool_min, int) or not isinstance(pool_max, int):
        raise ValueError("database.pool_min and database.pool_max must be integers")
    if pool_min < 0 or pool_max < max(pool_min, 1):
        raise ValueError(
            f"database pool bounds are invalid: pool_min={pool_min}, pool_max={pool_max}"
        )

    paths = config.get("paths", {})
    for key in ("results_folder", "reports_path"):
        if not paths.get(key):
            raise ValueError(f"paths.{key} is not specified in config/parameters.yaml")

    for section, keys in POSITIVE_NUMBERS.items():
        section_config = config.get(section, {})
        for key in keys:
            if key not in section_config:
                continue
            value = section_config[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(
                    f"{section}.{key} must be a number, got {type(value).__name__}"
                )
            if value <= 0:
                raise ValueError(f"{section}.{key} must be positive, got {value}")

    stable_samples = config.get("processing", {}).get("convergence_stable_samples", 1)
    if not isinstance(stable_samples, int) or stable_samples < 1:
        raise ValueError(
            f"processing.convergence_stable_samples must be an integer >= 1, "
            f"got {stable_samples!r}"
        )

    success_codes = config.get("reports", {}).get("success_exit_codes", [0, 3])
    if not isinstance(success_codes, list) or not all(
        isinstance(code, int) and not isinstance(code, bool) for code in success_codes
    ):
        raise ValueError("reports.success_exit_codes must be a list of integers")

    bird = config.get("bird", {})
    if bird.get("access_key"):
        for key in ("workspace_id", "channel_id", "template_project_id", "template_version"):
            if not bird.get(key):
                raise ValueError(
                    f"bird.access_key is set but bird.{key} is not specified. "
                    "Please define it in config/parameters.yaml."
                )
