import logging
from typing import Optional

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Console logging through rich, plus an optional plain log file."""
    handlers: list[logging.Handler] = [RichHandler(show_path=False, rich_tracebacks=True)]
    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
        handlers.append(fh)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
