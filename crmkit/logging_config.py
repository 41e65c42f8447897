"""
Logging configuration for crmkit.

Single 'crmkit' logger used across all modules.

  Log file : logs/crmkit.log
  Rotation : 5 MB x 3 backups
  Level    : LOG_LEVEL env var (DEBUG / INFO / WARNING / ERROR / CRITICAL)
             defaults to INFO when unset
  Console  : configure_logging(verbose=True) also echoes DEBUG and up to stderr

Usage
-----
    from crmkit.logging_config import configure_logging, log_call

    configure_logging()            # once at startup, idempotent

    @log_call
    def pipeline_move(deal_id, stage):
        ...

Log format per line
-------------------
    2026-10-19 14:32:01 | DEBUG    | CALL pipeline_move | user=6f1c | args=('d-1', 'Won')
    2026-10-19 14:32:01 | INFO     | OK   pipeline_move | user=6f1c | 42ms
    2026-10-19 14:32:01 | ERROR    | FAIL contacts_show | user=6f1c | NotFoundError: contact c-9 not found | 3ms
"""

import functools
import logging
import logging.handlers
import os
import sys
import time
from pathlib import Path

_LOG_DIR = Path(__file__).parent.parent / "logs"
_LOG_FILE = _LOG_DIR / "crmkit.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_BACKUP_COUNT = 3


def configure_logging(verbose: bool = False) -> logging.Logger:
    """
    Set up the crmkit logger and return it. Idempotent: the file handler is
    added once, the stderr handler once when verbose is first requested.
    """
    logger = logging.getLogger("crmkit")
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    if not any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logger.handlers):
        _LOG_DIR.mkdir(exist_ok=True)
        level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level_name, logging.INFO))

        handler = logging.handlers.RotatingFileHandler(
            _LOG_FILE,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if verbose and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        console.setLevel(logging.DEBUG)
        logger.addHandler(console)
        logger.setLevel(logging.DEBUG)

    return logger


def _acting_user() -> str:
    # imported here: crmkit.auth pulls in config, which needs DATABASE_URL
    from crmkit.auth import get_current_user
    return get_current_user() or "anonymous"


def log_call(func):
    """
    Decorator: logs entry, clean exit, and exceptions for any function,
    tagged with the owner identity the call runs as.

    - DEBUG on entry   : CALL <name> | user=<id> | args=(...)
    - INFO  on success : OK   <name> | user=<id> | <N>ms
    - ERROR on failure : FAIL <name> | user=<id> | ExcType: message | <N>ms   (then re-raises)
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger("crmkit")
        name = func.__name__
        user = _acting_user()
        start = time.perf_counter()

        parts = [repr(a) for a in args] + [f"{k}={v!r}" for k, v in kwargs.items()]
        arg_str = ", ".join(parts) if parts else "-"
        logger.debug(f"CALL {name} | user={user} | args=({arg_str})")

        try:
            result = func(*args, **kwargs)
            ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"OK   {name} | user={user} | {ms}ms")
            return result
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"FAIL {name} | user={user} | {type(exc).__name__}: {exc} | {ms}ms")
            raise

    return wrapper
