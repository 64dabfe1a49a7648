"""Logging utilities.

Every entry point (the extractor and cluster CLIs, the etl CLI, the Spark
driver and each Cloud Function) calls `configure_logging()` once at startup.
Modules log through `logging.getLogger(__name__)` with a bracketed
component prefix, e.g. "[Extractor] Staged ...".

Environment:
    LOG_LEVEL     DEBUG / INFO / WARNING (default INFO)
    LOG_DIR       Directory for log files (default "logs")
    LOG_TO_FILE   "false" to log to the console only (Cloud Functions and
                  Dataproc collect stdout themselves)
"""

from __future__ import annotations

import glob
import logging
import os
from datetime import datetime
from pathlib import Path

MAX_LOG_FILES_DEFAULT = 10
LOG_FORMAT = "%(asctime)s (%(levelname)s) | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that flood DEBUG output with transport detail.
NOISY_LOGGERS = ("google.auth", "urllib3", "aiohttp.access", "py4j")


def _prune_service_logs(log_dir: Path, service_name: str, keep: int) -> None:
    """Delete all but the newest `keep` log files of one service.

    Services share LOG_DIR, so only files named `<service_name>_*.log` are
    considered.
    """
    service_logs = sorted(
        glob.glob(str(log_dir / f"{service_name}_*.log")),
        key=os.path.getmtime,
        reverse=True,
    )
    for stale in service_logs[keep:]:
        try:
            os.remove(stale)
        except OSError:
            pass


def _file_handler(service_name: str, log_dir: Path, keep: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    # Room for the file about to be created
    _prune_service_logs(log_dir, service_name, max(keep - 1, 0))
    started = datetime.now().strftime("%Y%m%d_%H%M%S")
    return logging.FileHandler(log_dir / f"{service_name}_{started}.log", encoding="utf-8")


def configure_logging(
    *,
    service_name: str,
    level: str | None = None,
    log_dir: str | None = None,
    max_log_files: int = MAX_LOG_FILES_DEFAULT,
    to_file: bool | None = None,
) -> logging.Logger:
    """Route root logging to the console and, optionally, a per-run file.

    Calling it again replaces the previous handlers.

    Args:
        service_name: Component name (extractor, cluster, etl, spark-job, ...);
            also the log file prefix.
        level: Log level name; defaults to LOG_LEVEL or INFO.
        log_dir: Log file directory; defaults to LOG_DIR or "logs".
        max_log_files: Files kept per service, including the new one.
        to_file: Write a log file; defaults to LOG_TO_FILE (true unless "false").

    Returns:
        Logger named after the service.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if to_file is None:
        to_file = os.getenv("LOG_TO_FILE", "true").strip().lower() != "false"

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        handlers.append(
            _file_handler(service_name, Path(log_dir or os.getenv("LOG_DIR", "logs")), max_log_files)
        )

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return logging.getLogger(service_name)
