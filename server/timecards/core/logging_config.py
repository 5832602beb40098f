import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_DIR = Path(__file__).parent.parent.parent / "logs"

MAX_BYTES = 10 * 1024 * 1024  # 10MB
BACKUP_COUNT = 5

# Attributes every LogRecord carries; anything else arrived through ``extra``
_RECORD_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


class ExtraFieldsFormatter(logging.Formatter):
    """Formatter that appends ``extra={...}`` fields as ``key=value`` pairs.

    Engine log calls attach context such as ``error_code`` or the
    ``notification`` payload.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_KEYS}
        if not extras:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{line} | {rendered}"


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: Optional[Path] = None, level: Optional[int] = None):
    """
    Configure application logging.

    Console plus rotating files under ``log_dir``: app.log (everything at
    ``level``), error.log (ERROR and above) and access.log (the ``access``
    logger used by the request middleware, which does not propagate).
    Defaults come from settings (LOG_DIR, LOG_LEVEL).
    """
    from timecards.core.config import settings

    log_dir = Path(log_dir or settings.LOG_DIR or LOG_DIR)
    if level is None:
        level = logging.getLevelName(settings.LOG_LEVEL.upper())
        if not isinstance(level, int):
            level = logging.INFO
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ExtraFieldsFormatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    file_formatter = ExtraFieldsFormatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    root_logger.addHandler(_rotating_handler(log_dir / "app.log", level, file_formatter))
    root_logger.addHandler(_rotating_handler(log_dir / "error.log", logging.ERROR, file_formatter))

    access_logger = logging.getLogger("access")
    access_logger.setLevel(logging.INFO)
    access_logger.handlers.clear()
    access_logger.addHandler(_rotating_handler(
        log_dir / "access.log",
        logging.INFO,
        logging.Formatter('%(asctime)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S'),
    ))
    access_logger.propagate = False

    # Engine SQL is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
