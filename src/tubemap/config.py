"""Runtime configuration from environment variables.

Everything has a working default: without OPENAI_API_KEY the engine runs
Tier-1 only, and without ROUTING_WEBHOOK_URL routing decisions are only
logged and broadcast. validate_config() is called at startup so a malformed
value fails fast with a clear message rather than mid-call.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

OPTIONAL_VARS = [
    "OPENAI_API_KEY",
    "ROUTING_WEBHOOK_URL",
    "ROUTING_WEBHOOK_SECRET",
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    tier2_model: str = "gpt-4o-mini"
    tier2_threshold: int = 70
    tier2_timeout_s: float = 2.0
    debounce_ms: int = 500
    session_ttl_s: float = 1800.0
    sweep_interval_s: float = 300.0
    auto_fast_track: bool = True
    auto_fast_track_min_confidence: int = 67
    routing_webhook_url: str = ""
    routing_webhook_secret: str = ""
    log_level: str = "INFO"

    @property
    def tier2_enabled(self) -> bool:
        return bool(self.openai_api_key)


def _int(env: Mapping[str, str], name: str, default: int, low: int, high: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < low or (high is not None and value > high):
        raise ConfigError(f"{name} must be between {low} and {high if high is not None else 'inf'}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read Settings from env (defaults to os.environ). Raises ConfigError on bad values."""
    env = os.environ if env is None else env
    log_level = env.get("LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL {log_level!r} is not a logging level")
    return Settings(
        openai_api_key=env.get("OPENAI_API_KEY", ""),
        tier2_model=env.get("TUBEMAP_TIER2_MODEL", "gpt-4o-mini"),
        tier2_threshold=_int(env, "TUBEMAP_TIER2_THRESHOLD", 70, 0, 100),
        tier2_timeout_s=_float(env, "TUBEMAP_TIER2_TIMEOUT_S", 2.0),
        debounce_ms=_int(env, "TUBEMAP_DEBOUNCE_MS", 500, 0),
        session_ttl_s=_float(env, "TUBEMAP_SESSION_TTL_S", 1800.0),
        sweep_interval_s=_float(env, "TUBEMAP_SWEEP_INTERVAL_S", 300.0),
        auto_fast_track=_bool(env, "TUBEMAP_AUTO_FAST_TRACK", True),
        auto_fast_track_min_confidence=_int(env, "TUBEMAP_AUTO_FAST_TRACK_MIN_CONFIDENCE", 67, 0, 100),
        routing_webhook_url=env.get("ROUTING_WEBHOOK_URL", ""),
        routing_webhook_secret=env.get("ROUTING_WEBHOOK_SECRET", ""),
        log_level=log_level,
    )


def validate_config(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings at startup.

    Exits the process with a clear error if any value is malformed.
    Logs warnings for missing optional variables.
    """
    try:
        settings = load_settings(env)
    except ConfigError as e:
        print(
            f"\nFATAL: Invalid configuration:\n  {e}\n"
            f"\nFix it in .env (local) or the deployment secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    env = os.environ if env is None else env
    for var in OPTIONAL_VARS:
        if not env.get(var):
            logger.warning("Optional env var %s is not set", var)
    return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
