from __future__ import annotations

import csv
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import insert, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from product_import.db import store_step
from product_import.errors import DuplicateKeyError, InputError, LoadError, ProductImportError
from product_import.models import StagedProduct, utc_now
from product_import.staging import StagingStore

logger = logging.getLogger(__name__)

FIELDS = ("barcode", "price", "stock", "name", "description")

LOAD_DATA_SQL = f"""
    LOAD DATA LOCAL INFILE :path
    INTO TABLE {StagedProduct.__tablename__}
    FIELDS TERMINATED BY ','
    ENCLOSED BY '"'
    LINES TERMINATED BY '\\n'
    IGNORE 1 LINES
    (barcode, price, stock, name, description)
    SET import_batch = :batch_id, staged_at = NOW()
"""


class StagingRow(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    barcode: str = Field(min_length=1, max_length=50)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    stock: int = Field(ge=0)
    name: str = Field(default="", max_length=255)
    description: str = ""


class BulkLoader:
    """Streams one delimited file into staging under a single batch id.

    The previous rows of the batch are deleted first, so loading the same
    batch id twice leaves only the second attempt's rows. Delete, load,
    duplicate handling and count share one transaction.
    """

    def __init__(
        self,
        db: Session,
        chunk_size: int = 5000,
        use_load_data_infile: bool = True,
        duplicate_policy: str = "reject",
    ) -> None:
        if duplicate_policy not in {"reject", "last_wins"}:
            raise ValueError(f"Unknown duplicate policy: {duplicate_policy}")
        self.db = db
        self.staging = StagingStore(db)
        self.chunk_size = max(1, chunk_size)
        self.use_load_data_infile = use_load_data_infile
        self.duplicate_policy = duplicate_policy

    @property
    def strategy(self) -> str:
        if self.use_load_data_infile and self.db.get_bind().dialect.name == "mysql":
            return "load_data_infile"
        return "chunked_insert"

    def load(self, batch_id: str, file_path: str | Path) -> int:
        path = Path(file_path)
        self.preflight(path, batch_id)

        try:
            cleared = self.staging.clear_batch(batch_id)
            if cleared:
                logger.info("batch=%s cleared %s staged rows from a previous attempt", batch_id, cleared)

            logger.info("batch=%s loading %s into %s using %s", batch_id, path, StagedProduct.__tablename__, self.strategy)
            with store_step(f"Load {path.name} into {StagedProduct.__tablename__} for batch {batch_id}"):
                if self.strategy == "load_data_infile":
                    self._load_data_infile(batch_id, path)
                else:
                    self._insert_chunks(batch_id, path)

            self._resolve_duplicates(batch_id)
            loaded = self.staging.count_batch(batch_id)
            self.db.commit()
        except ProductImportError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LoadError(f"Bulk load rejected by the store: {exc}", batch_id=batch_id) from exc
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            self.db.rollback()
            raise InputError(f"Could not read input file {path}: {exc}", batch_id=batch_id) from exc

        logger.info("batch=%s successfully loaded %s records", batch_id, loaded)
        return loaded

    def preflight(self, path: Path, batch_id: str | None = None) -> None:
        if not path.is_file():
            raise InputError(f"Input file does not exist: {path}", batch_id=batch_id)
        try:
            with path.open(newline="", encoding="utf-8") as handle:
                header = next(csv.reader(handle), None)
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise InputError(f"Input file is not readable: {path}: {exc}", batch_id=batch_id) from exc
        if header is None:
            raise InputError(f"Input file is empty: {path}", batch_id=batch_id)
        if len(header) != len(FIELDS):
            raise InputError(
                f"Expected {len(FIELDS)} header fields, found {len(header)}",
                batch_id=batch_id,
                details={"header": header},
            )

    def _load_data_infile(self, batch_id: str, path: Path) -> None:
        self.db.execute(text(LOAD_DATA_SQL), {"path": str(path.resolve()), "batch_id": batch_id})

    def _insert_chunks(self, batch_id: str, path: Path) -> None:
        staged_at = utc_now()
        chunk: list[dict[str, Any]] = []
        for row in self._read_rows(path, batch_id, staged_at):
            chunk.append(row)
            if len(chunk) >= self.chunk_size:
                self.db.execute(insert(StagedProduct), chunk)
                chunk = []
        if chunk:
            self.db.execute(insert(StagedProduct), chunk)

    def _read_rows(self, path: Path, batch_id: str, staged_at: datetime) -> Iterator[dict[str, Any]]:
        with path.open(newline="", encoding="utf-8") as handle:
            reader = csv.reader(handle)
            next(reader, None)
            for fields in reader:
                if not fields:
                    continue
                yield self._parse_row(fields, reader.line_num, batch_id, staged_at)

    def _parse_row(self, fields: list[str], line: int, batch_id: str, staged_at: datetime) -> dict[str, Any]:
        if len(fields) != len(FIELDS):
            raise InputError(
                f"Line {line}: expected {len(FIELDS)} fields, found {len(fields)}",
                batch_id=batch_id,
                details={"line": line},
            )
        try:
            record = StagingRow(**dict(zip(FIELDS, fields)))
        except ValidationError as exc:
            raise InputError(
                f"Line {line}: invalid product record",
                batch_id=batch_id,
                details={"line": line, "errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        return {**record.model_dump(), "import_batch": batch_id, "staged_at": staged_at}

    def _resolve_duplicates(self, batch_id: str) -> None:
        duplicates = self.staging.duplicate_keys(batch_id)
        if not duplicates:
            return
        if self.duplicate_policy == "last_wins":
            removed = self.staging.drop_superseded_duplicates(batch_id)
            logger.warning("batch=%s dropped %s superseded rows for duplicate barcodes", batch_id, removed)
            return
        raise DuplicateKeyError(
            "Input contains duplicate barcodes within one batch",
            batch_id=batch_id,
            details={"sample": duplicates},
        )
