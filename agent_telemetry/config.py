"""Agent telemetry configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_float_list(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return tuple(float(token) for token in value.split(",") if token.strip())
    except ValueError:
        return default


# State root: session metadata, record stores, cooldown markers
HOME_DIR = Path(os.getenv("AGENT_TELEMETRY_HOME", str(Path.home() / ".agent-telemetry"))).expanduser()
SESSIONS_DIR = HOME_DIR / "sessions"
CACHE_DIR = HOME_DIR / "cache"

# Agent transcript locations
CLAUDE_HOME = Path(os.getenv("CLAUDE_CONFIG_DIR", str(Path.home() / ".claude"))).expanduser()

# Remote endpoint
API_BASE_URL = os.getenv("AGENT_TELEMETRY_API_BASE_URL", "")
API_KEY = os.getenv("AGENT_TELEMETRY_API_KEY", "")
COOKIES = os.getenv("AGENT_TELEMETRY_COOKIES", "")
CLIENT_TYPE = os.getenv("AGENT_TELEMETRY_CLIENT_TYPE", "agent-telemetry")
CLIENT_VERSION = os.getenv("AGENT_TELEMETRY_CLIENT_VERSION", "0.1.0")
PROJECT = os.getenv("AGENT_TELEMETRY_PROJECT", "")
DRY_RUN = _env_bool("AGENT_TELEMETRY_DRY_RUN", False)
DEBUG = _env_bool("AGENT_TELEMETRY_DEBUG", False)

# Sync tuning
SYNC_TIMEOUT_SECONDS = _env_float("AGENT_TELEMETRY_SYNC_TIMEOUT_SECONDS", 10.0)
SYNC_RETRY_ATTEMPTS = _env_int("AGENT_TELEMETRY_SYNC_RETRY_ATTEMPTS", 2)
SYNC_RETRY_DELAYS = _env_float_list("AGENT_TELEMETRY_SYNC_RETRY_DELAYS", (1.0, 2.0, 5.0))
SYNC_LOCK_STALE_SECONDS = _env_int("AGENT_TELEMETRY_SYNC_LOCK_STALE_SECONDS", 300)
SYNC_ON_STOP = _env_bool("AGENT_TELEMETRY_SYNC_ON_STOP", True)

# Extraction tuning
METRICS_COOLDOWN_SECONDS = _env_int("AGENT_TELEMETRY_METRICS_COOLDOWN_SECONDS", 60)
DISCOVERY_MAX_AGE_DAYS = _env_int("AGENT_TELEMETRY_DISCOVERY_MAX_AGE_DAYS", 30)

# Observability
OTEL_ENABLED = _env_bool("AGENT_TELEMETRY_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENT_TELEMETRY_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENT_TELEMETRY_OTEL_SERVICE_NAME", "agent-telemetry")
