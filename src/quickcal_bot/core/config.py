"""
Triage configuration loading.

Config lives in a JSON file next to the other bot config; when the file
does not exist the defaults are written out so operators have something
to edit. QUICKCAL_* environment variables override file values.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from quickcal_bot.core.models import TriageConfig

logger = logging.getLogger(__name__)

load_dotenv()

PACKAGE_DIR = Path(__file__).parent.parent  # src/quickcal_bot/
if Path("/app/config").exists():
    # Docker: config is mounted at /app/config
    CONFIG_DIR = Path("/app/config")
else:
    PROJECT_ROOT = PACKAGE_DIR.parent.parent
    CONFIG_DIR = PROJECT_ROOT / "config"

TRIAGE_CONFIG_FILE = CONFIG_DIR / "triage_config.json"

# env var -> TriageConfig field
ENV_OVERRIDES = {
    "QUICKCAL_BATCH_TIMEOUT_MS": "batch_timeout_ms",
    "QUICKCAL_MAX_BATCH_SIZE": "max_batch_size",
    "QUICKCAL_CONVERSATION_MAX_AGE_MS": "conversation_max_age_ms",
    "QUICKCAL_CLEANUP_INTERVAL_SECONDS": "cleanup_interval_seconds",
}


def load_config(config_file: Optional[Path] = None) -> TriageConfig:
    """
    Load triage configuration.

    Args:
        config_file: Path to the JSON config. Defaults to TRIAGE_CONFIG_FILE.

    Returns:
        Validated TriageConfig

    Raises:
        ValueError: If the file is not valid JSON, an env override is not an
                    integer, or a value fails validation
    """
    if config_file is None:
        config_file = TRIAGE_CONFIG_FILE

    data: dict = {}
    if config_file.exists():
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_file}: {e}") from e
    else:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(TriageConfig().model_dump(), f, indent=2)
        logger.info(f"Wrote default triage config to {config_file}")

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw.strip() == "":
            continue
        try:
            data[field_name] = int(raw)
        except ValueError as e:
            raise ValueError(f"{env_name} must be an integer, got {raw!r}") from e
        logger.debug(f"Config override from {env_name}: {field_name}={raw}")

    try:
        return TriageConfig(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid triage config: {e}") from e
