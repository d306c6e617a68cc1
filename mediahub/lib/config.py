"""
Configuration for the hub, page hosts and observers.

One JSON object with a section per component (``hub``, ``page``, ``agent``,
``observer``), read from the first of:

  1. $MEDIAHUB_CONFIG
  2. /etc/mediahub/config.json
  3. ./config.json

Every key is optional; callers pass their own default to ``cfg()``.
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/mediahub/config.json",
    "config.json",
]


def _search_paths() -> list[str]:
    override = os.getenv("MEDIAHUB_CONFIG")
    if override:
        return [override, *_SEARCH_PATHS]
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    hub = config.get("hub") or {}
    port = hub.get("port")
    if port is not None and not isinstance(port, int):
        logger.warning("Config %s: hub.port should be an integer, got %r", path, port)
    if hub.get("url") and not str(hub["url"]).startswith(("http://", "https://")):
        logger.warning("Config %s: hub.url '%s' is not an http(s) URL", path, hub["url"])
    observer = config.get("observer") or {}
    delay = observer.get("reconnect_delay")
    if delay is not None and (not isinstance(delay, (int, float)) or delay <= 0):
        logger.warning("Config %s: observer.reconnect_delay must be a positive number", path)
    agent = config.get("agent") or {}
    interval = agent.get("frame_interval")
    if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
        logger.warning("Config %s: agent.frame_interval must be a positive number", path)


def _read(path: str) -> dict | None:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Config %s must hold a JSON object, ignoring it", path)
        return None
    logger.info("Config loaded from %s", path)
    _validate(data, path)
    return data


def load_config() -> dict:
    """Return the config, reading it on first use."""
    global _config
    if _config is None:
        found = (_read(path) for path in _search_paths())
        _config = next((data for data in found if data is not None), None)
        if _config is None:
            logger.debug("No config file found, using built-in defaults")
            _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """``cfg("hub", "port", default=8780)``; with no key, the whole section."""
    values = load_config().get(section)
    if key is None:
        return default if values is None else values
    return values.get(key, default) if isinstance(values, dict) else default


def reload_config() -> dict:
    """Drop the cached config and read it again."""
    global _config
    _config = None
    return load_config()
