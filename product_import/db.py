from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from product_import.config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "mysql":
        # LOAD DATA LOCAL INFILE is refused unless the client opts in.
        connect_args["local_infile"] = True
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def build_sessionmaker(database_url: str | None = None) -> sessionmaker:
    engine = build_engine(database_url or get_settings().database_url)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@contextmanager
def store_step(description: str) -> Iterator[None]:
    """Log ``Executing``/``Success``/``Failed`` around one statement against the store."""
    logger.info("Executing: %s", description)
    try:
        yield
    except Exception:
        logger.error("Failed: %s", description)
        raise
    logger.info("Success: %s", description)
