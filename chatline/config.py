"""
Configuration for chatline.

config.yaml is read once and layered over DEFAULTS, so a partial file only
has to name what it changes. ${ENV_VAR} references in string values are
expanded (a .env file next to the process is honoured).

runtime_config.yaml is small mutable state the terminal client keeps between
runs (selected model, selected conversation). It is re-read whenever its
mtime changes and written one key at a time.
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).parent.parent
_CONFIG_PATH = Path(os.environ.get("CHATLINE_CONFIG", _ROOT / "config.yaml"))
_RUNTIME_CONFIG_PATH = Path(os.environ.get("CHATLINE_RUNTIME_CONFIG", _ROOT / "runtime_config.yaml"))

_ENV_REF = re.compile(r"\$\{(\w+)\}")

DEFAULTS: dict = {
    "backend": {
        "url": "http://localhost:11434",
        "default_model": "gpt-oss:20b",
        "timeout": 120,
    },
    "server": {"host": "127.0.0.1", "port": 8000},
    "storage": {"chats_dir": "./data/chats"},
    "chat": {
        "history_window": 12,
        "temperature": 0.7,
        "top_p": 0.9,
        "default_name": "New chat",
    },
    "logging": {"level": "INFO", "file": ""},
}

_config: dict | None = None

# Last good runtime state and the mtime it was read at
_runtime_config: dict = {}
_runtime_mtime: float = 0.0


def _expand(obj):
    """Expand ${ENV_VAR} in every string inside obj. Unset variables become ''."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), obj)
    if isinstance(obj, dict):
        return {k: _expand(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand(v) for v in obj]
    return obj


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict:
    """Mapping stored in a YAML file; an empty or non-mapping document reads as {}."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(path: Path | None = None) -> dict:
    """
    Read config.yaml (or `path`) over DEFAULTS and cache the result.
    Raises FileNotFoundError if the file does not exist.
    """
    global _config
    if path is None and _config is not None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    _config = _merge(DEFAULTS, _expand(_read_yaml(config_path)))
    logger.debug("Loaded config from %s", config_path)
    return _config


def get_config() -> dict:
    return _config if _config is not None else load_config()


def reset_config():
    """Forget the cached config; the next get_config() reads the file again."""
    global _config
    _config = None


def get_runtime_config() -> dict:
    """
    The `runtime:` block of runtime_config.yaml, or {} when there is no file.
    A file that fails to parse leaves the previous values in place.
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
            block = _read_yaml(_RUNTIME_CONFIG_PATH).get("runtime")
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Ignoring unreadable %s: %s", _RUNTIME_CONFIG_PATH, e)
        else:
            _runtime_config = block if isinstance(block, dict) else {}
            _runtime_mtime = mtime

    return _runtime_config


def update_runtime_config(key: str, value) -> bool:
    """Store one key under `runtime:`; other keys are kept. Returns False on failure."""
    global _runtime_mtime
    try:
        data = _read_yaml(_RUNTIME_CONFIG_PATH) if _RUNTIME_CONFIG_PATH.exists() else {}
        if not isinstance(data.get("runtime"), dict):
            data["runtime"] = {}
        data["runtime"][key] = value
        with open(_RUNTIME_CONFIG_PATH, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True)
    except (OSError, yaml.YAMLError) as e:
        logger.error(
            "Could not save %s to %s: %s (dir writable=%s)",
            key, _RUNTIME_CONFIG_PATH, e,
            os.access(_RUNTIME_CONFIG_PATH.parent, os.W_OK),
        )
        return False

    # Same-second writes keep the same mtime, so force the next read
    _runtime_mtime = 0.0
    return True
