from __future__ import annotations

import logging
from pathlib import Path

from product_import.models import utc_now

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
PACKAGE_LOGGER = "product_import"


def configure_logging(log_dir: str | Path | None = None, timestamp: str | None = None, level: int = logging.INFO) -> dict[str, Path]:
    """Send package logs to the console and, with ``log_dir``, to a run log plus an error-only log."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if not log_dir:
        return {}

    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = timestamp or utc_now().strftime("%Y%m%d_%H%M%S")
    paths = {
        "log": directory / f"import_{stamp}.log",
        "errors": directory / f"import_errors_{stamp}.log",
    }

    run_handler = logging.FileHandler(paths["log"], encoding="utf-8")
    run_handler.setFormatter(formatter)
    logger.addHandler(run_handler)

    error_handler = logging.FileHandler(paths["errors"], encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    logger.addHandler(error_handler)
    return paths
