import logging
import os
from logging.handlers import TimedRotatingFileHandler

import structlog
from structlog.contextvars import merge_contextvars

from fleetwatch.core.config import settings


def configure_logging() -> None:
    # 1) stdlib root logger
    root = logging.getLogger()
    root.setLevel(settings.log_level)

    # 2) handlers
    handlers: list[logging.Handler] = []

    sh = logging.StreamHandler()
    sh.setLevel(settings.log_level)
    handlers.append(sh)

    if settings.log_dir:
        os.makedirs(settings.log_dir, exist_ok=True)
        fh = TimedRotatingFileHandler(
            filename=os.path.join(settings.log_dir, "fleetwatch.log"),
            when="D",
            interval=1,
            backupCount=14,
            encoding="utf-8",
            utc=True,
        )
        fh.setLevel(settings.log_level)
        handlers.append(fh)

    # 3) structlog processors (shared)
    pre_chain = [
        merge_contextvars,  # request_id, machine_id ...
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = structlog.dev.ConsoleRenderer(
        colors=False,
        pad_event=0,
        pad_level=False,
    )

    # 4) stdlib -> structlog formatter bridge
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root.handlers.clear()
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    # 5) structlog config
    structlog.configure(
        processors=pre_chain + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(*args, **initial_values) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(*args, **initial_values)
