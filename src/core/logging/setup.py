"""
Process-wide logging configuration for the restore sidecar.

One console handler (human readable) and, optionally, one size-rotated
JSON file per process under a dated folder:

    logs/2025-01-15/restore_download_20250115_p12345.log
"""

import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# SDK and HTTP client loggers that flood DEBUG/INFO with per-request lines
NOISY_LOGGERS = (
    "botocore",
    "aiobotocore",
    "aioboto3",
    "urllib3",
    "aiohttp",
)

PLAIN_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d %(message)s"


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class LoggingConfig:
    """Where and how verbosely to log.

    Load from environment using LoggingConfig.from_env().
    """

    log_dir: Path = Path("logs")
    log_to_file: bool = True
    json_format: bool = True
    console_level: int = logging.INFO
    file_level: int = logging.DEBUG
    max_bytes: int = 10 * 1024 * 1024  # 10MB per file
    backup_count: int = 5
    quiet_sdk_loggers: bool = True
    per_process_files: bool = True

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load logging settings from environment variables.

        Optional environment variables (with defaults):
            RESTORE_LOG_DIR: logs
            RESTORE_LOG_TO_FILE: true
            RESTORE_LOG_JSON: true
            RESTORE_LOG_LEVEL: INFO (console level)

        Raises:
            ValueError: If RESTORE_LOG_LEVEL is not a known level name
        """
        level_name = os.getenv("RESTORE_LOG_LEVEL", "INFO").strip().upper()
        console_level = logging.getLevelName(level_name)
        if not isinstance(console_level, int):
            raise ValueError(f"RESTORE_LOG_LEVEL must be a log level name, got {level_name!r}")
        return cls(
            log_dir=Path(os.getenv("RESTORE_LOG_DIR", "logs")),
            log_to_file=_bool_env("RESTORE_LOG_TO_FILE", True),
            json_format=_bool_env("RESTORE_LOG_JSON", True),
            console_level=console_level,
        )


def get_log_file_path(
    log_dir: Path,
    stage: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> Path:
    """
    Path of today's log file.

    Args:
        log_dir: Root folder; a YYYY-MM-DD subfolder is added
        stage: Pipeline stage in the file name (download, stage, import)
        instance_id: Suffix that keeps several sidecar processes sharing
            one folder from writing the same file

    Returns:
        {log_dir}/{YYYY-MM-DD}/restore[_{stage}]_{YYYYMMDD}[_{instance_id}].log
    """
    today = datetime.now()
    name_parts = ["restore"]
    if stage:
        name_parts.append(stage)
    name_parts.append(today.strftime("%Y%m%d"))
    if instance_id:
        name_parts.append(instance_id)
    return log_dir / today.strftime("%Y-%m-%d") / ("_".join(name_parts) + ".log")


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter())
    return handler


def _file_handler(path: Path, config: LoggingConfig) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(config.file_level)
    if config.json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FILE_FORMAT))
    return handler


def setup_logging(
    config: Optional[LoggingConfig] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    name: str = "restore_pipeline",
) -> logging.Logger:
    """
    Install the console and file handlers on the root logger.

    Calling it again replaces the previous handlers.

    Args:
        config: Logging settings (default: LoggingConfig())
        stage: Stage stamped on every line and used in the file name
        worker_id: Worker identifier stamped on every line
        name: Name of the logger returned

    Returns:
        Logger ``name``
    """
    config = config or LoggingConfig()
    set_log_context(stage=stage, worker_id=worker_id)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)  # handlers do the filtering

    root.addHandler(_console_handler(config.console_level))

    log_file = None
    if config.log_to_file:
        instance_id = f"p{os.getpid()}" if config.per_process_files else None
        log_file = get_log_file_path(config.log_dir, stage=stage, instance_id=instance_id)
        root.addHandler(_file_handler(log_file, config))

    if config.quiet_sdk_loggers:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug(
        f"Logging to {log_file or 'console only'} (json={config.json_format})",
        extra={"operation": "setup_logging"},
    )
    return logger
