"""Logging configuration using loguru."""

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

DEFAULT_JSON_LOG_FILE = "logs/chatstream.jsonl"


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    format_string: str | None = None,
    log_format: str = "text",
    json_log_file: str | Path | None = None,
) -> None:
    """
    Configure the loguru logger.

    Safe to call more than once: existing handlers are removed first.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a text log file. Console only if None.
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days")
        format_string: Custom console format. Defaults to CONSOLE_FORMAT.
        log_format: "json", "text" or "both"; anything else means "both"
        json_log_file: Path of the JSONL sink when JSON output is enabled
    """
    logger.remove()

    use_json = log_format in ("json", "both")
    use_text = log_format in ("text", "both")
    if not use_json and not use_text:
        use_json = use_text = True

    if use_text:
        logger.add(
            sys.stderr,
            format=format_string or CONSOLE_FORMAT,
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                str(log_file),
                format=FILE_FORMAT,
                level=level,
                rotation=rotation,
                retention=retention,
                compression="zip",
                backtrace=True,
                diagnose=True,
                enqueue=True,
            )

    if use_json:
        json_path = Path(json_log_file or DEFAULT_JSON_LOG_FILE)
        json_path.parent.mkdir(parents=True, exist_ok=True)
        # Fields bound in structured_logging end up under record["extra"]
        logger.add(
            str(json_path),
            format="{message}",
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            enqueue=True,
            serialize=True,
        )


# Console-only defaults on import; the entry point reconfigures
setup_logging(log_format="text")

__all__ = ["logger", "setup_logging"]
