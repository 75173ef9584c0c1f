from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, insert, literal, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from product_import.db import store_step
from product_import.errors import MergeError
from product_import.models import Product, StagedProduct, utc_now
from product_import.staging import StagingStore

logger = logging.getLogger(__name__)

products = Product.__table__
staged = StagedProduct.__table__


@dataclass(frozen=True)
class MergeResult:
    inserted: int
    updated: int

    @property
    def total_affected(self) -> int:
        return self.inserted + self.updated


class MergeEngine:
    """Reconciles one staged batch against the product catalog.

    New barcodes are inserted first, then existing products whose price or
    stock differ are updated. Products whose values already match are left
    untouched so ``updated_at`` only moves on a real change. Both statements
    run in one transaction; a failure leaves the catalog as it was.
    """

    def __init__(self, db: Session, purge_staging: bool = False) -> None:
        self.db = db
        self.purge_staging = purge_staging

    def merge(self, batch_id: str) -> MergeResult:
        merged_at = utc_now()
        try:
            with store_step(f"Insert new products from batch {batch_id}"):
                inserted = self._insert_new(batch_id, merged_at)
            logger.info("batch=%s inserted %s new products", batch_id, inserted)

            with store_step(f"Update changed products from batch {batch_id}"):
                updated = self._update_changed(batch_id, merged_at)
            logger.info("batch=%s updated %s existing products", batch_id, updated)

            if self.purge_staging:
                StagingStore(self.db).purge_batch(batch_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise MergeError(f"Merge into {products.name} failed: {exc}", batch_id=batch_id) from exc

        result = MergeResult(inserted=inserted, updated=updated)
        logger.info("batch=%s total affected records: %s", batch_id, result.total_affected)
        return result

    def _insert_new(self, batch_id: str, merged_at: datetime) -> int:
        source = (
            select(
                staged.c.barcode,
                staged.c.price,
                staged.c.stock,
                staged.c.name,
                staged.c.description,
                literal(merged_at, DateTime(timezone=True)).label("created_at"),
                literal(merged_at, DateTime(timezone=True)).label("updated_at"),
            )
            .select_from(staged.outerjoin(products, products.c.barcode == staged.c.barcode))
            .where(staged.c.import_batch == batch_id, products.c.id.is_(None))
        )
        statement = insert(products).from_select(
            ["barcode", "price", "stock", "name", "description", "created_at", "updated_at"],
            source,
        )
        return self.db.execute(statement).rowcount or 0

    def _update_changed(self, batch_id: str, merged_at: datetime) -> int:
        statement = (
            update(products)
            .where(
                products.c.barcode == staged.c.barcode,
                staged.c.import_batch == batch_id,
                or_(products.c.price != staged.c.price, products.c.stock != staged.c.stock),
            )
            .values(price=staged.c.price, stock=staged.c.stock, updated_at=merged_at)
        )
        return self.db.execute(statement).rowcount or 0
