import logging, sys, structlog

def setup_logging(log_level: str = "INFO"):
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if not sys.stdout.isatty()
        else structlog.dev.ConsoleRenderer()
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True
    )

    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stdout)

def get_logger(name: str):
    return structlog.get_logger(name)
