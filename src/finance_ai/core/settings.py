import math
import os
import re

from dotenv import find_dotenv, load_dotenv

from finance_ai.logger import get_logger

logger = get_logger(__name__)

CONFIG_FILENAME = "config.yaml"

DEFAULT_MIN_CONFIDENCE = 0.6
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_TIMEOUT = 30.0
DEFAULT_OPENAI_MAX_RETRIES = 2
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MEMORY_RELOAD_SECONDS = 5 * 60

# Every key the categorizer reads, with the value used when it is unset
SETTING_DEFAULTS: dict[str, str | None] = {
    "LOG_LEVEL": "INFO",
    "LOG_DIR": None,
    "DATA_DIR": "data",
    "OPENAI_API_KEY": None,
    "OPENAI_MODEL": DEFAULT_OPENAI_MODEL,
    "OPENAI_BASE_URL": None,
    "OPENAI_TIMEOUT": str(DEFAULT_OPENAI_TIMEOUT),
    "OPENAI_MAX_RETRIES": str(DEFAULT_OPENAI_MAX_RETRIES),
    "AI_MIN_CONFIDENCE": str(DEFAULT_MIN_CONFIDENCE),
    "CACHE_TTL_SECONDS": str(DEFAULT_CACHE_TTL_SECONDS),
    "MEMORY_RELOAD_SECONDS": str(DEFAULT_MEMORY_RELOAD_SECONDS),
    "RULES_PATH": None,
}

_SECRET_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")
_SECRET_PREFIXES = ("sk-", "rk-", "Bearer ", "bearer ")

_CONFIG_LINE = re.compile(r"^(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*:(?P<value>.*)$")

_config_path: str | None = None
_config_values: dict[str, str] = {}
_external_keys: frozenset[str] = frozenset()


def _candidate_dirs() -> list[str]:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return [config_dir]
    cwd = os.getcwd()
    return [os.path.join(cwd, "config"), cwd]


def _find_dotenv() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir and os.path.exists(os.path.join(config_dir, ".env")):
        return os.path.join(config_dir, ".env")
    return find_dotenv(usecwd=True) or None


def _find_config_file() -> str:
    dirs = _candidate_dirs()
    for directory in dirs:
        candidate = os.path.join(directory, CONFIG_FILENAME)
        if os.path.exists(candidate):
            return candidate
    return os.path.join(dirs[-1], CONFIG_FILENAME)


def _parse_value(raw: str) -> str:
    """Drop a trailing ``# comment`` outside quotes, then one level of quoting."""
    quote: str | None = None
    end = len(raw)
    for index, char in enumerate(raw):
        if quote:
            if char == quote and raw[index - 1] != "\\":
                quote = None
        elif char in "\"'":
            quote = char
        elif char == "#":
            end = index
            break

    value = raw[:end].strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read a flat ``KEY: value`` file; nested YAML structures are not supported."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            match = _CONFIG_LINE.match(line.strip())
            if not match:
                continue
            value = _parse_value(match.group("value"))
            if value:
                values[match.group("key")] = value
    return values


def load_environment() -> None:
    """
    Populate ``os.environ`` from ``.env`` and ``config.yaml``.

    Variables already present in the process environment win over ``.env``,
    which wins over the config file.
    """
    global _config_path, _config_values, _external_keys

    dotenv_path = _find_dotenv()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)
    _external_keys = frozenset(os.environ)

    _config_path = _find_config_file()
    _config_values = read_config_file(_config_path)
    for key in SETTING_DEFAULTS:
        if key in _config_values:
            os.environ.setdefault(key, _config_values[key])


def get_config_path() -> str | None:
    return _config_path


def is_env_override(name: str) -> bool:
    return name in _external_keys


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s=%s is below %s, using default %s.", name, value, min_value, default)
        return default
    return value


def get_env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


def resolve_min_confidence(raw: float | str | None) -> tuple[float, bool]:
    """
    Validate an AI_MIN_CONFIDENCE value.

    Returns the effective threshold and whether the raw value was usable.
    Anything that is not a finite number in (0, 1] yields the default.
    """
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_MIN_CONFIDENCE, False
    if not math.isfinite(value) or not 0 < value <= 1:
        return DEFAULT_MIN_CONFIDENCE, False
    return value, True


def get_min_confidence_setting() -> str | None:
    # Unset means the documented default, not a misconfiguration
    return os.getenv("AI_MIN_CONFIDENCE", SETTING_DEFAULTS["AI_MIN_CONFIDENCE"])


def get_openai_api_key() -> str | None:
    return os.getenv("OPENAI_API_KEY") or None


def mask_env_value(name: str, value: str) -> str:
    shown = value.replace("\r", "\\r").replace("\n", "\\n")
    secret = any(marker in name.upper() for marker in _SECRET_MARKERS) or shown.startswith(_SECRET_PREFIXES)
    if not secret:
        return shown
    if len(shown) <= 4:
        return "****"
    return f"{shown[:2]}...{shown[-2:]}"


def setting_source(name: str) -> str:
    if os.getenv(name) is None:
        return "default"
    if is_env_override(name):
        return "env"
    if name in _config_values:
        return "config"
    return "runtime"


def log_environment() -> None:
    config_path = get_config_path()
    found = config_path is not None and os.path.exists(config_path)
    logger.info("[ENV] Effective settings (config file: %s)", config_path if found else "<none>")
    for key, default in SETTING_DEFAULTS.items():
        raw = os.getenv(key)
        if raw is None:
            logger.info("[ENV] %s=<unset> (default: %s)", key, default if default is not None else "-")
        else:
            logger.info("[ENV] %s=%s [%s]", key, mask_env_value(key, raw), setting_source(key))


load_environment()

DATA_DIR = os.getenv("DATA_DIR") or SETTING_DEFAULTS["DATA_DIR"]
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")
