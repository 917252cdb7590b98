"""Configuration loading and rewriting for the puppet."""

import json
import logging
import os
import tempfile
from pathlib import Path

from matrix_puppet.errors import ConfigError

log = logging.getLogger(__name__)

CONFIG_ENV = "MATRIX_PUPPET_CONFIG"


def get_config_path() -> Path:
    """Get the config file location.

    Uses MATRIX_PUPPET_CONFIG or falls back to ~/.config/matrix-puppet/config.json
    """
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".config" / "matrix-puppet" / "config.json"


def example_config() -> dict:
    """Skeleton config shown to users whose file is missing or incomplete."""
    return {
        "bridge": {
            "homeserverUrl": "https://matrix.org",
            "domain": "matrix.org",
        },
        "puppet": {
            "id": "@user:matrix.org",
            "localpart": "user",
            "token": "syt_...",
        },
    }


def _missing_fields(config: dict, required: list[str]) -> list[str]:
    missing = []
    for field in required:
        section, key = field.split(".")
        value = config.get(section)
        if not isinstance(value, dict) or not value.get(key):
            missing.append(field)
    return missing


def load_config(path: Path | str | None = None, require_puppet: bool = True) -> dict:
    """Load the puppet config.

    Args:
        path: Config file, defaults to get_config_path()
        require_puppet: If True, require puppet.id and puppet.token (everything
            except the association flow needs them)

    Returns:
        The parsed config dict, unknown keys untouched

    Raises:
        ConfigError if the file is missing, malformed or lacks required fields
    """
    config_path = Path(path) if path else get_config_path()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a JSON object")

    # Validate required fields, the domain is only needed to build the
    # puppet ID during association
    required = ["bridge.homeserverUrl"]
    if require_puppet:
        required += ["puppet.id", "puppet.token"]
    else:
        required.append("bridge.domain")

    missing = _missing_fields(config, required)
    if missing:
        raise ConfigError(f"Config missing required fields: {', '.join(missing)}")

    log.debug("Loaded config from %s", config_path)
    return config


def merge_puppet(config: dict, user_id: str, localpart: str, token: str) -> dict:
    """Return a copy of config whose puppet section holds the new credentials.

    Every other key is kept as is; the given dict is not modified.
    """
    return {
        **config,
        "puppet": {
            "id": user_id,
            "localpart": localpart,
            "token": token,
        },
    }


def save_config(path: Path | str, config: dict):
    """Overwrite the config file with config, pretty-printed.

    The file holds an access token, so it is chmod 600. The new content is
    written next to the target and moved over it, so a failed write leaves
    the old file in place.
    """
    config_path = Path(path)
    data = json.dumps(config, indent=2) + "\n"

    config_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=config_path.parent, prefix=f".{config_path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(data)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, config_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
