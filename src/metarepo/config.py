from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .plugins.errors import ConfigError
from .plugins.models import RuntimeConfig, WorkspaceConfig

APP = "metarepo"
META_FILE = ".meta"

logger = logging.getLogger(__name__)


def config_dir() -> Path:
    """
    Cross-platform config directory:
      - Windows: %APPDATA%\\metarepo
      - macOS/Linux: $XDG_CONFIG_HOME/metarepo or ~/.config/metarepo
    """
    if os.name == "nt":
        base = os.environ.get("APPDATA") or str(Path.home())
        return Path(base) / APP
    return Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))) / APP


def config_path() -> Path:
    return config_dir() / "config.json"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() not in ("", "0", "false", "no")


def _parse_timeout(value: Any, source: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{source} must be a number of seconds, got {value!r}")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{source} must be a number of seconds, got {value!r}") from e
    if not (seconds > 0 and math.isfinite(seconds)):
        raise ConfigError(f"{source} must be a positive number of seconds, got {value!r}")
    return seconds


@dataclass
class HostSettings:
    """User-level host settings: ``config.json`` in the config dir, then environment."""
    plugin_timeout_s: Optional[float] = None
    plugins_dir: Path = field(default_factory=lambda: config_dir() / "plugins")
    experimental: bool = False
    non_interactive: bool = False

    @staticmethod
    def load(path: Optional[Path] = None) -> "HostSettings":
        path = path or config_path()

        data: dict = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable settings file %s: %s", path, e)
                data = {}
        if not isinstance(data, dict):
            data = {}

        s = HostSettings(experimental=bool(data.get("experimental", False)))
        if data.get("plugin_timeout_s") is not None:
            s.plugin_timeout_s = _parse_timeout(data["plugin_timeout_s"], f"plugin_timeout_s in {path}")
        if data.get("plugins_dir"):
            s.plugins_dir = Path(data["plugins_dir"]).expanduser()

        # Environment overrides (highest priority)
        timeout = os.environ.get("METAREPO_PLUGIN_TIMEOUT")
        if timeout:
            s.plugin_timeout_s = _parse_timeout(timeout, "METAREPO_PLUGIN_TIMEOUT")

        if os.environ.get("METAREPO_PLUGINS_DIR"):
            s.plugins_dir = Path(os.environ["METAREPO_PLUGINS_DIR"]).expanduser()
        s.experimental = s.experimental or _env_flag("METAREPO_EXPERIMENTAL")
        s.non_interactive = _env_flag("METAREPO_NON_INTERACTIVE") or _env_flag("CI")
        return s


def find_meta_file(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from ``start`` (default: cwd) to the nearest ``.meta`` file."""
    current = Path(start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / META_FILE
        if candidate.is_file():
            return candidate
    return None


def read_meta_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e.strerror or e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def write_meta_json(path: Path, data: Dict[str, Any]) -> None:
    try:
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot write {path}: {e.strerror or e}") from e


def load_workspace_config(path: Path) -> WorkspaceConfig:
    """Parse a ``.meta`` file.

    Raises:
        ConfigError: the file is unreadable or malformed.
    """
    data = read_meta_json(path)
    try:
        return WorkspaceConfig.from_dict(data)
    except (ValueError, TypeError, AttributeError) as e:
        raise ConfigError(f"{path}: {e}") from e


def build_runtime_config(settings: HostSettings, cwd: Optional[Path] = None,
                         experimental: bool = False, non_interactive: bool = False) -> RuntimeConfig:
    """Assemble the per-invocation RuntimeConfig from disk, settings and flags."""
    cwd = Path(cwd or Path.cwd())
    meta_file = find_meta_file(cwd)
    workspace = load_workspace_config(meta_file) if meta_file else WorkspaceConfig()
    if meta_file:
        logger.debug("Using workspace config %s", meta_file)

    return RuntimeConfig(
        workspace_config=workspace,
        working_directory=cwd,
        config_file_path=meta_file,
        experimental_enabled=experimental or settings.experimental,
        non_interactive=non_interactive or settings.non_interactive,
    )


def set_plugin_declaration(meta_file: Path, name: str, spec: str) -> None:
    """Add or replace ``plugins.<name>``, keeping every other key as written."""
    data = read_meta_json(meta_file)
    plugins = data.get("plugins")
    if not isinstance(plugins, dict):
        plugins = {}
    plugins[name] = spec
    data["plugins"] = plugins
    write_meta_json(meta_file, data)


def remove_plugin_declaration(meta_file: Path, name: str) -> bool:
    data = read_meta_json(meta_file)
    plugins = data.get("plugins")
    if not isinstance(plugins, dict) or name not in plugins:
        return False
    del plugins[name]
    write_meta_json(meta_file, data)
    return True
