import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from loguru import logger

from notification_engine.config.settings import Settings, settings
from notification_engine.utils.context import get_request_id

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[request_id]}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[request_id]} | "
    "{name}:{function}:{line} - {message}"
)


class InterceptHandler(logging.Handler):
    loglevel_mapping = {
        50: "CRITICAL",
        40: "ERROR",
        30: "WARNING",
        20: "INFO",
        10: "DEBUG",
        0: "NOTSET",
    }

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except (AttributeError, ValueError):
            level = self.loglevel_mapping[record.levelno]

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        request_id = get_request_id() or "engine"
        log = logger.bind(request_id=request_id)
        log.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class CustomizeLogger:
    @classmethod
    def make_logger(cls, config: Settings):
        log_dir: Optional[Path] = Path(config.LOG_DIR) if config.LOG_DIR else None
        return cls.customize_logging(
            log_dir=log_dir,
            filename=f"{date.today().strftime('%Y-%m-%d')}-{config.LOG_FILENAME}",
            level=config.LOG_LEVEL,
            rotation=config.LOG_ROTATION,
            retention=config.LOG_RETENTION,
            use_json_logs=config.LOG_JSON,
        )

    @classmethod
    def customize_logging(
        cls,
        log_dir: Optional[Path],
        filename: str,
        level: str,
        rotation: str,
        retention: str,
        use_json_logs: bool = False,
    ):
        logger.remove()
        logger.configure(extra={"request_id": "engine"})

        # Console logger with colors
        logger.add(
            sys.stdout,
            backtrace=True,
            level=level.upper(),
            format=CONSOLE_FORMAT,
            colorize=True,
        )

        # File logger without colors, only when a log directory is configured
        if log_dir is not None:
            logger.add(
                str(log_dir / filename),
                rotation=rotation,
                retention=retention,
                enqueue=True,
                backtrace=True,
                level=level.upper(),
                serialize=use_json_logs,
                format=FILE_FORMAT,
                colorize=False,
            )

        cls.intercept_standard_logging()

        return logger

    @staticmethod
    def intercept_standard_logging():
        """Redirect standard logging (SQLAlchemy, httpx, Celery) to loguru."""
        logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

        for log_name in ["sqlalchemy.engine", "httpx", "celery", "celery.task"]:
            _logger = logging.getLogger(log_name)
            _logger.handlers = [InterceptHandler()]
            _logger.propagate = False


custom_logger = CustomizeLogger.make_logger(settings)


def get_logger():
    """Get the custom logger instance with request ID binding."""
    request_id = get_request_id() or "engine"
    return custom_logger.bind(request_id=request_id)
