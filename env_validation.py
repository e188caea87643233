"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the variables the progress service reads at startup.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "progress.db",
        "PROGRESS_PERSISTENCE": os.getenv("PROGRESS_PERSISTENCE") or "1",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "PROGRESS_RULES_PATH": "Alternate chapter unlock / XP rules file",
    }

    rules_path = os.getenv("PROGRESS_RULES_PATH")
    if rules_path and not Path(rules_path).is_file():
        raise EnvironmentError(f"PROGRESS_RULES_PATH does not point to a file: {rules_path}")

    flag = os.environ["PROGRESS_PERSISTENCE"].strip().lower()
    if flag not in _TRUE_VALUES | _FALSE_VALUES:
        raise EnvironmentError(f"Invalid boolean for PROGRESS_PERSISTENCE: {flag}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES
