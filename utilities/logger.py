"""
Structured logging for the sync and digest jobs.

Wraps structlog over stdlib logging: JSON or console rendering, optional file
output, and masking of credential fields before anything is rendered.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union
import structlog
from structlog.stdlib import LoggerFactory

# Event keys whose values never reach a log sink
SENSITIVE_KEYS = frozenset({"password", "access_token", "token", "bot_token", "cookies"})

_FILE_HANDLER_NAME = "bookflow-file"

# Third-party loggers that print request URLs; the Telegram URL carries the bot token
QUIET_LOGGERS = ("httpx", "httpcore")


def mask_sensitive_fields(logger, method_name, event_dict):
    """structlog processor replacing credential values with a fixed mask."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[Union[str, Path]] = None,
    debug: bool = False
) -> None:
    """
    Configure structlog and the root stdlib logger.

    Safe to call more than once; the file handler is replaced, not duplicated.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for machine-readable lines, ``console`` for humans
        log_file: Optional log file path
        debug: Add call-site information to every event
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if debug:
        processors.append(structlog.processors.CallsiteParameterAdder())

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    for handler in [h for h in root_logger.handlers if h.get_name() == _FILE_HANDLER_NAME]:
        root_logger.removeHandler(handler)
        handler.close()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.set_name(_FILE_HANDLER_NAME)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(file_handler)

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=log_level,
        format=log_format,
        file=str(log_file) if log_file else None,
        debug=debug
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class SyncLogger:
    """
    Specialized logger for scheduled job runs with context management.
    """

    def __init__(self, name: str = "sync"):
        self.logger = structlog.get_logger(name)
        self.context = {}

    def bind_context(self, **kwargs) -> 'SyncLogger':
        """
        Bind context variables to the logger.

        Args:
            **kwargs: Context variables to bind

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    def clear_context(self) -> 'SyncLogger':
        """Clear all context variables."""
        self.context.clear()
        return self

    def log_run_start(self, job: str) -> None:
        """Log job run start."""
        self.logger.info("Job run started", job=job, **self.context)

    def log_run_complete(self, job: str, duration_seconds: float, **fields) -> None:
        """Log job run completion."""
        self.logger.info(
            "Job run completed",
            job=job,
            duration_seconds=round(duration_seconds, 3),
            **fields,
            **self.context
        )

    def log_run_failed(self, job: str, code: str, error: str) -> None:
        self.logger.error("Job run failed", job=job, code=code, error=error, **self.context)

    def log_classification(self, charge_id: str, status: str, title: Optional[str] = None) -> None:
        """Log the sync status assigned to one charge."""
        self.logger.debug(
            "Charge classified",
            charge_id=charge_id,
            status=status,
            title=title,
            **self.context
        )

    def log_retry(self, url: str, attempt: int, max_attempts: int, delay_ms: int, reason: str) -> None:
        """Log retry attempt."""
        self.logger.warning(
            "Retrying request",
            url=url,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_ms=delay_ms,
            reason=reason,
            **self.context
        )

    def log_error(self, error: str, url: Optional[str] = None, attempts: Optional[int] = None) -> None:
        """Log error with context."""
        self.logger.error(
            "Request failed",
            error=error,
            url=url,
            attempts=attempts,
            **self.context
        )
