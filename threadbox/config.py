"""
Config loader for threadbox.

config.yaml is read once and cached; every module goes through get_config().
Each top-level section is laid over its DEFAULT_CONFIG counterpart, and
${VAR} references in string values are filled from the environment (.env
included).

runtime_config.yaml holds values changed while running, such as the active
search engine. get_runtime_config() re-reads it whenever its mtime moves.
"""

import logging
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(os.environ.get(
    "THREADBOX_CONFIG", Path(__file__).parent.parent / "config.yaml"
))
_RUNTIME_CONFIG_PATH = Path(os.environ.get(
    "THREADBOX_RUNTIME_CONFIG", Path(__file__).parent.parent / "runtime_config.yaml"
))

_config: dict | None = None

# Runtime config hot-reload state
_runtime_config: dict = {}
_runtime_mtime: float = 0.0

DEFAULT_CONFIG: dict = {
    "server": {"host": "127.0.0.1", "port": 8700},
    "storage": {"sqlite_path": "./data/threadbox.db"},
    "logging": {"level": "INFO", "file": None},
    "providers": [],
    "defaults": {},
    "models": {},
    "search": {"engine": "duckduckgo", "max_results": 5},
    "search_assistant": {},
    "enricher": {"enabled": True, "max_urls": 3, "max_content_length": 5000, "timeout": 10},
}

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(obj):
    """Fill ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _with_defaults(raw: dict) -> dict:
    merged = {}
    for section in DEFAULT_CONFIG.keys() | raw.keys():
        default = DEFAULT_CONFIG.get(section)
        value = raw.get(section, default)
        if isinstance(default, dict) and isinstance(value, dict):
            value = {**default, **value}
        merged[section] = value
    return merged


def _read_yaml(path: Path) -> dict:
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(path: Path | None = None) -> dict:
    """Load and cache config.yaml. Raises FileNotFoundError when it is missing."""
    global _config
    if _config is not None:
        return _config

    config_path = Path(path or _CONFIG_PATH)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    _config = _expand_env(_with_defaults(_read_yaml(config_path)))
    logger.debug("Loaded config from %s", config_path)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None


def get_runtime_config() -> dict:
    """
    The `runtime:` block of runtime_config.yaml, or {} when there is none.
    An unreadable file keeps the last good copy.
    """
    global _runtime_config, _runtime_mtime

    try:
        mtime = _RUNTIME_CONFIG_PATH.stat().st_mtime
    except FileNotFoundError:
        return {}
    except OSError:
        return _runtime_config

    if mtime != _runtime_mtime:
        try:
            runtime = _read_yaml(_RUNTIME_CONFIG_PATH).get("runtime")
        except (OSError, yaml.YAMLError) as e:
            logger.warning("runtime config unreadable, keeping last good copy: %s", e)
        else:
            _runtime_config = runtime if isinstance(runtime, dict) else {}
            _runtime_mtime = mtime

    return _runtime_config


def update_runtime_config(key: str, value) -> bool:
    """Persist one `runtime:` key. Returns False (and logs) when the write fails."""
    global _runtime_mtime
    try:
        data = _read_yaml(_RUNTIME_CONFIG_PATH) if _RUNTIME_CONFIG_PATH.exists() else {}
        if not isinstance(data.get("runtime"), dict):
            data["runtime"] = {}
        data["runtime"][key] = value

        with open(_RUNTIME_CONFIG_PATH, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Could not write %s=%r to %s: %s", key, value, _RUNTIME_CONFIG_PATH, e)
        return False

    # Force the next read to reload
    _runtime_mtime = 0.0
    logger.info("Runtime config: %s = %r", key, value)
    return True
