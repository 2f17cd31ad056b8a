import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default) in ("1", "true", "TRUE", "yes", "YES")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}={raw!r}") from exc


# --------------------------
# Configuration and Defaults
# --------------------------
DEFAULT_ARCHIVES_DIR = "./archives"

# Status service (consistency tracker) reached over a websocket
PARSER_SERVER_PORT = os.environ.get("PARSER_SERVER_PORT", "8889")
STATUS_SERVER_URL = os.environ.get("STATUS_SERVER_URL", f"ws://localhost:{PARSER_SERVER_PORT}/")
STATUS_RPC_TIMEOUT_SEC = _env_int("STATUS_RPC_TIMEOUT_SEC", 15)

# Engine
ENGINE_NAME = "Archiver"
MAX_SIMULTANEOUS_TASKS = _env_int("MAX_SIMULTANEOUS_TASKS", 2)
MAX_RETRY = _env_int("MAX_RETRY", 3)
RERUN_COOLDOWN_HOURS = _env_int("RERUN_COOLDOWN_HOURS", 6)
RECONCILE_INTERVAL_SEC = _env_int("RECONCILE_INTERVAL_SEC", 60)
STATUS_LOG_INTERVAL_SEC = _env_int("STATUS_LOG_INTERVAL_SEC", 5)
PROGRESS_LOG_INTERVAL_SEC = _env_int("PROGRESS_LOG_INTERVAL_SEC", 4)

# Remote source back-off (seconds of engine-wide pause)
RATE_LIMIT_PAUSE_SEC = _env_int("RATE_LIMIT_PAUSE_SEC", 120)
TRANSIENT_ERROR_PAUSE_SEC = _env_int("TRANSIENT_ERROR_PAUSE_SEC", 30)
HTTP_CONNECT_TIMEOUT_SEC = _env_int("HTTP_CONNECT_TIMEOUT_SEC", 10)
HTTP_READ_TIMEOUT_SEC = _env_int("HTTP_READ_TIMEOUT_SEC", 30)

# Fragmenter
FRAGMENT_FLUSH_ROWS = _env_int("FRAGMENT_FLUSH_ROWS", 10_000)

# Exchange listing check through ccxt
VERIFY_PAIRS_ON_EXCHANGE = _env_bool("VERIFY_PAIRS_ON_EXCHANGE", "1")

# Status API (disabled unless a port is given)
API_HOST = os.environ.get("API_HOST", "127.0.0.1")
API_PORT: Optional[int] = _env_int("API_PORT", 0) or None

LOG_DIR = os.environ.get("LOG_DIR", "logs")
LOG_FILE = os.path.join(LOG_DIR, "archiver.log")
LOGGER_NAME = "archiver"


def archives_dir() -> str:
    """Root of every archive artifact. Read from the environment on each call."""
    return os.environ.get("ARCHIVES_DIR") or DEFAULT_ARCHIVES_DIR


def seeded_archives_dir() -> str:
    """Root where operators may drop raw archives fetched by other means."""
    return os.environ.get("SEEDED_ARCHIVES_DIR") or archives_dir()


# --------------------------
# Logging
# --------------------------

def sweep_tmp_files(logger: Optional[logging.Logger] = None):
    """Remove lingering temporary files that indicate interrupted artifact writes."""
    root = archives_dir()
    if not os.path.isdir(root):
        return
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if not name.endswith(".tmp"):
                continue
            path = os.path.join(dirpath, name)
            try:
                os.remove(path)
                if logger:
                    logger.info(f"Removed lingering temp file: {path}")
            except OSError as e:
                if logger:
                    logger.warning(f"Failed to remove temp file {path}: {e}")


def shutdown_logging():
    """Close and remove all handlers attached to the 'archiver' logger to prevent file descriptor leaks."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        except (OSError, ValueError):
            pass
        logger.removeHandler(h)


def setup_logging(verbose: bool = True) -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    sweep_tmp_files(logger)

    import atexit
    atexit.register(shutdown_logging)

    return logger
