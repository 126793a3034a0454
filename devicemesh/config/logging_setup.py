import logging
from pathlib import Path
from typing import Optional

from devicemesh.config.settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Configure root logging for the CLI and embedding services."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = log_file or settings.log_file
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level or settings.log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # SQLAlchemy engine chatter is only useful when debugging queries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
