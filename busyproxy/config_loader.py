"""busyproxy.config_loader

Configuration for the busy-feed proxy.

- YAML (PyYAML) or JSON config files, loaded by ``load_config()``.
- Environment overlay via ``build_config_from_env()``, including a
  repository-local ``.env`` file that never overrides the real environment.
- A typed dataclass ``Config`` with conservative coercion in ``from_dict()``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("busyproxy.yaml")

DURATION_MODES = ("absolute", "wall_clock")
_TRUTHY = ("1", "true", "yes", "on")


def _env_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    return value.strip().lower() in _TRUTHY


@dataclass
class Config:
    """Typed configuration for busyproxy.

    Fields:
        source_url: upstream ICS feed URL
        feed_key: shared secret required as ``?key=`` when set
        server_bind: host to bind the HTTP server to
        server_port: port for the HTTP server
        window_weeks: length of the published window (1..52)
        floating_timezone: zone for floating times when the feed names none
        display_timezone: zone used to compute named inspection windows
        duration_mode: "absolute" (fixed elapsed time) or "wall_clock"
        max_occurrences_per_rule: safety cap per recurring event
        prefer_iana_timezones: consult IANA before the feed's VTIMEZONEs
        include_transparent: publish free/transparent events too
        allow_url_override: accept ``?url=`` on the feed endpoint
        enable_debug_endpoints: expose /debug/* inspection routes
        request_timeout: upstream read timeout in seconds
        max_retries: upstream retry attempts on network errors
        retry_backoff_factor: base of the exponential retry backoff
        calendar_name: X-WR-CALNAME of the published feed
        log_level: logging level name
    """

    source_url: str | None = None
    feed_key: str | None = None
    server_bind: str = "0.0.0.0"  # nosec: B104 - default for container use; overridable via config/env
    server_port: int = 3000
    window_weeks: int = 8
    floating_timezone: str = "UTC"
    display_timezone: str = "UTC"
    duration_mode: str = "absolute"
    max_occurrences_per_rule: int = 1000
    prefer_iana_timezones: bool = False
    include_transparent: bool = False
    allow_url_override: bool = False
    enable_debug_endpoints: bool = False
    request_timeout: int = 30
    max_retries: int = 3
    retry_backoff_factor: float = 1.5
    calendar_name: str = "Busy Calendar"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced, out-of-range values are clamped and
        unknown keys are ignored, each with a warning.
        """
        if data is None:
            data = {}
        defaults = cls()

        unknown = sorted(set(data) - set(asdict(defaults)))
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

        def _coerce_int(key: str, low: int, high: int) -> int:
            default = getattr(defaults, key)
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        def _coerce_float(key: str) -> float:
            default = getattr(defaults, key)
            raw = data.get(key, default)
            try:
                return float(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not a number; using default %s", key, raw, default)
                return default

        def _coerce_bool(key: str) -> bool:
            raw = data.get(key, getattr(defaults, key))
            if isinstance(raw, str):
                return raw.strip().lower() in _TRUTHY
            return bool(raw)

        def _optional_str(key: str) -> str | None:
            raw = data.get(key)
            if raw is None:
                return None
            text = str(raw).strip()
            return text or None

        def _str(key: str) -> str:
            return _optional_str(key) or getattr(defaults, key)

        duration_mode = _str("duration_mode").lower()
        if duration_mode not in DURATION_MODES:
            logger.warning("Unknown duration_mode %r; using %r", duration_mode, defaults.duration_mode)
            duration_mode = defaults.duration_mode

        return cls(
            source_url=_optional_str("source_url"),
            feed_key=_optional_str("feed_key"),
            server_bind=_str("server_bind"),
            server_port=_coerce_int("server_port", 1, 65535),
            window_weeks=_coerce_int("window_weeks", 1, 52),
            floating_timezone=_str("floating_timezone"),
            display_timezone=_str("display_timezone"),
            duration_mode=duration_mode,
            max_occurrences_per_rule=_coerce_int("max_occurrences_per_rule", 1, 100_000),
            prefer_iana_timezones=_coerce_bool("prefer_iana_timezones"),
            include_transparent=_coerce_bool("include_transparent"),
            allow_url_override=_coerce_bool("allow_url_override"),
            enable_debug_endpoints=_coerce_bool("enable_debug_endpoints"),
            request_timeout=_coerce_int("request_timeout", 1, 300),
            max_retries=_coerce_int("max_retries", 0, 10),
            retry_backoff_factor=_coerce_float("retry_backoff_factor"),
            calendar_name=_str("calendar_name"),
            log_level=_str("log_level").upper(),
        )

    def redacted(self) -> dict[str, Any]:
        """Return the configuration as a dict with secrets masked, for logging."""
        values = asdict(self)
        if values.get("feed_key"):
            values["feed_key"] = "***"
        return values


def _load_yaml_or_json(path: Path) -> Any:
    """Load a YAML or JSON config file.

    JSON is tried for ``.json`` files, YAML (a superset of JSON) otherwise.
    """
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    loaded = yaml.safe_load(text)
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from a YAML/JSON file.

    Args:
        path: Optional path to the config file (default ``./busyproxy.yaml``)

    Returns:
        Config with values from the file, or defaults if it is missing

    Raises:
        ValueError: If the file's top level is not a mapping
    """
    p = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_PATH
    logger.debug("Attempting to load config from %s", p)
    if not p.exists():
        logger.info("Config file %s not found; using defaults", p)
        return Config()

    raw = _load_yaml_or_json(p)
    if not isinstance(raw, dict):
        logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
        raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
    cfg = Config.from_dict(raw)
    logger.info("Loaded configuration from %s", p)
    return cfg


def load_dotenv_defaults(env_path: Path | None = None) -> list[str]:
    """Load KEY=VALUE lines from a ``.env`` file into ``os.environ``.

    Keys already present in the environment are left untouched.

    Returns:
        The keys that were set
    """
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return []

    set_keys = []
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        logger.debug("Failed to read %s for defaults (continuing)", env_path, exc_info=True)
        return []

    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        val = val.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = val
            set_keys.append(key)

    if set_keys:
        # Keys only, values may be secrets
        logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
    return set_keys


def build_config_from_env(load_dotenv: bool = True) -> dict[str, Any]:
    """Build a config mapping from environment variables.

    Recognizes:
      - BUSYPROXY_SOURCE_ICS_URL or SOURCE_ICS_URL -> source_url
      - BUSYPROXY_FEED_KEY or FEED_KEY -> feed_key
      - BUSYPROXY_HOST -> server_bind
      - BUSYPROXY_PORT or PORT -> server_port
      - BUSYPROXY_LOG_LEVEL -> log_level
      - BUSYPROXY_DEBUG -> log_level DEBUG
      - BUSYPROXY_ENABLE_DEBUG_ENDPOINTS -> enable_debug_endpoints

    Returns:
        Mapping suitable for ``Config.from_dict`` (only keys that are set)
    """
    if load_dotenv:
        load_dotenv_defaults()

    cfg: dict[str, Any] = {}

    source_url = os.environ.get("BUSYPROXY_SOURCE_ICS_URL") or os.environ.get("SOURCE_ICS_URL")
    if source_url:
        cfg["source_url"] = source_url

    feed_key = os.environ.get("BUSYPROXY_FEED_KEY") or os.environ.get("FEED_KEY")
    if feed_key:
        cfg["feed_key"] = feed_key

    host = os.environ.get("BUSYPROXY_HOST")
    if host:
        cfg["server_bind"] = host

    port = os.environ.get("BUSYPROXY_PORT") or os.environ.get("PORT")
    if port:
        try:
            cfg["server_port"] = int(port)
        except ValueError:
            logger.warning("Invalid BUSYPROXY_PORT/PORT=%r; ignoring", port)

    log_level = os.environ.get("BUSYPROXY_LOG_LEVEL")
    if log_level:
        cfg["log_level"] = log_level
    if _env_flag(os.environ.get("BUSYPROXY_DEBUG")):
        cfg["log_level"] = "DEBUG"

    debug_endpoints = _env_flag(os.environ.get("BUSYPROXY_ENABLE_DEBUG_ENDPOINTS"))
    if debug_endpoints is not None:
        cfg["enable_debug_endpoints"] = debug_endpoints

    return cfg


def resolve_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
    load_dotenv: bool = True,
) -> Config:
    """Merge file, environment and explicit overrides into one ``Config``.

    Precedence, lowest first: config file, environment, ``overrides``.
    """
    base = asdict(load_config(path))
    base.update(build_config_from_env(load_dotenv=load_dotenv))
    if overrides:
        base.update({k: v for k, v in overrides.items() if v is not None})
    return Config.from_dict(base)
