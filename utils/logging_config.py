# utils/logging_config.py
"""
Logging for the field mapper: one line format, stdout plus an optional file,
and per-package level overrides (e.g. keep extractors at DEBUG while the rest
stays at INFO)
"""
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# spreadsheet and UI libraries log every file open / rerun at INFO
NOISY_LOGGERS = ('openpyxl', 'streamlit', 'watchdog', 'urllib3')


def _level(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else default


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None,
                  module_levels: Optional[Dict[str, str]] = None) -> logging.Logger:
    """
    Configure the root logger for the CLI and the Streamlit page

    Args:
        log_level: Root level name; unknown names fall back to INFO
        log_file: Optional log file path; empty or None logs to stdout only
        module_levels: Logger name -> level name overrides, applied last

    Returns:
        The root logger
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    # force: replaces handlers left by an earlier call
    logging.basicConfig(
        level=_level(log_level),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, level in (module_levels or {}).items():
        logging.getLogger(name).setLevel(_level(level))

    root = logging.getLogger()
    logging.getLogger(__name__).info(
        f"Logging configured at {logging.getLevelName(root.level)} level"
        + (f" (overrides: {', '.join(f'{k}={v}' for k, v in module_levels.items())})" if module_levels else '')
    )
    return root
