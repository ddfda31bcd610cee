"""
YAML configuration for the rill shell.

Example `~/.rill.yaml`:

    prompt: "rill> "
    continuation_prompt: "... "
    debug: false
    plugins:
      - rill.rill_plugins.RuntimePlugin
    commands:
      list:
        name: symbols
        short: sy
"""
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from rill.rill_datatypes import ConfigError

DEFAULT_PLUGINS = ["rill.rill_plugins.RuntimePlugin"]
DEFAULT_CONFIG_PATH = Path.home() / ".rill.yaml"


def _dbg(enabled: bool, *parts):
    if enabled or os.environ.get("RILL_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except Exception:
            pass


@dataclass
class RillConfig:
    prompt: str = "rill> "
    continuation_prompt: str = "... "
    # None means the backend's own template.
    result_template: Optional[str] = None
    debug: bool = False
    plugins: List[str] = field(default_factory=lambda: list(DEFAULT_PLUGINS))
    commands: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    banner: str = "rill REPL v0.1\nType ':help' for commands, ':quit' or Ctrl+D to quit."

    @classmethod
    def from_dict(cls, data: Any) -> 'RillConfig':
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"configuration must be a mapping, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        if "plugins" in data and not isinstance(data["plugins"], list):
            raise ConfigError("'plugins' must be a list of dotted class paths")
        if "commands" in data and not isinstance(data["commands"], dict):
            raise ConfigError("'commands' must be a mapping of command name to overrides")
        return cls(**data)

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Per-command override, e.g. get('list', 'short', 'ls')."""
        overrides = self.commands.get(section) or {}
        return overrides.get(key, default)


def load_config(path: Optional[str] = None) -> RillConfig:
    """Load configuration from `path`, $RILL_CONFIG, or ~/.rill.yaml."""
    explicit = path or os.environ.get("RILL_CONFIG")
    if explicit:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(f"configuration file not found: {explicit}")
    elif DEFAULT_CONFIG_PATH.exists():
        p = DEFAULT_CONFIG_PATH
    else:
        return RillConfig()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    return RillConfig.from_dict(data)
