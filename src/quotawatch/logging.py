import logging

import structlog

LOG_FORMATS = ("console", "json")


def _renderer(fmt: "str") -> "structlog.typing.Processor":
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(level: "str", fmt: "str" = "console") -> "None":
    """
    configures stdlib logging and structlog. `fmt` selects the console
    renderer for interactive use or one JSON object per line when the
    output is collected by a log shipper.

    Tokens, cookies and passphrases are never handed to a logger.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level)
    # httpx logs every request URL at INFO, device flow polling included
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    processors: "list[structlog.typing.Processor]" = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(fmt))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
