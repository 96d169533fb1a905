"""
Supervisor settings.

Resolves where the supervisor finds its local state, the backup mount and
the gateway binary. Values are layered, lowest precedence first:

  1. defaults from moltbot_constants
  2. ~/.moltbot/sandbox.yaml (or $MOLTBOT_SETTINGS_FILE)
  3. MOLTBOT_* environment variables

Ports are fixed by the host environment and are not part of the settings.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

import moltbot_constants as C

logger = logging.getLogger(__name__)

MOLTBOT_HOME = Path(os.getenv("MOLTBOT_HOME", Path.home() / ".moltbot"))

# settings field -> environment variable
_ENV_OVERRIDES = {
    "config_dir": "MOLTBOT_CONFIG_DIR",
    "backup_dir": "MOLTBOT_BACKUP_DIR",
    "skills_dir": "MOLTBOT_SKILLS_DIR",
    "openclaw_home_dir": "MOLTBOT_OPENCLAW_HOME",
    "template_file": "MOLTBOT_TEMPLATE_FILE",
    "log_dir": "MOLTBOT_LOG_DIR",
    "binary_path": "OPENCLAW_BIN",
    "startup_timeout": "MOLTBOT_STARTUP_TIMEOUT",
    "port_probe_timeout": "MOLTBOT_PORT_PROBE_TIMEOUT",
}

_PATH_FIELDS = {"config_dir", "backup_dir", "skills_dir", "openclaw_home_dir", "template_file", "log_dir"}
_FLOAT_FIELDS = {"startup_timeout", "port_probe_timeout"}


@dataclass
class SandboxSettings:
    """Filesystem layout and timing knobs for one supervisor instance."""

    config_dir: Path = field(default_factory=lambda: Path(C.CONFIG_DIR))
    backup_dir: Path = field(default_factory=lambda: Path(C.R2_MOUNT_PATH))
    skills_dir: Path = field(default_factory=lambda: Path(C.SKILLS_DIR))
    openclaw_home_dir: Path = field(default_factory=lambda: Path(C.OPENCLAW_HOME_DIR))
    template_file: Path = field(default_factory=lambda: Path(C.TEMPLATE_FILE))
    log_dir: Path = field(default_factory=lambda: MOLTBOT_HOME / "logs")
    binary_path: str = C.PREFERRED_GATEWAY_BINARY
    startup_timeout: float = float(C.STARTUP_TIMEOUT_SECONDS)
    port_probe_timeout: float = C.PORT_PROBE_TIMEOUT_SECONDS

    @property
    def config_file(self) -> Path:
        return self.config_dir / C.CONFIG_FILENAME

    @property
    def local_marker(self) -> Path:
        return self.config_dir / C.SYNC_MARKER_NAME

    @property
    def remote_marker(self) -> Path:
        return self.backup_dir / C.SYNC_MARKER_NAME

    @property
    def lock_files(self) -> tuple:
        return tuple(Path(p) for p in C.GATEWAY_LOCK_FILES) + (self.config_dir / "gateway.lock",)


def _coerce(name: str, value: Any) -> Any:
    if name in _PATH_FIELDS:
        return Path(str(value)).expanduser()
    if name in _FLOAT_FIELDS:
        return float(value)
    return str(value)


def _load_yaml_settings(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a mapping", path)
        return {}
    return data


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    settings_file: Optional[Path] = None,
) -> SandboxSettings:
    """Build SandboxSettings from the YAML file and environment overrides."""
    env = os.environ if env is None else env
    if settings_file is None:
        settings_file = Path(env.get("MOLTBOT_SETTINGS_FILE") or MOLTBOT_HOME / "sandbox.yaml")

    known = {f.name for f in fields(SandboxSettings)}
    values: Dict[str, Any] = {}

    for key, raw in _load_yaml_settings(settings_file).items():
        if key not in known:
            logger.debug("Unknown settings key '%s' in %s", key, settings_file)
            continue
        try:
            values[key] = _coerce(key, raw)
        except (TypeError, ValueError):
            logger.warning("Invalid value for '%s' in %s: %r", key, settings_file, raw)

    for key, env_var in _ENV_OVERRIDES.items():
        raw = env.get(env_var)
        if not raw:
            continue
        try:
            values[key] = _coerce(key, raw)
        except (TypeError, ValueError):
            logger.warning("Invalid value for %s: %r", env_var, raw)

    return SandboxSettings(**values)
