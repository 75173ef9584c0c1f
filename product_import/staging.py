from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, aliased

from product_import.db import store_step
from product_import.models import StagedProduct, utc_now

logger = logging.getLogger(__name__)

DELETE_CHUNK_SIZE = 1000


class StagingStore:
    """Batch-scoped access to the staging table.

    Every statement filters on ``import_batch`` so concurrent runs never see
    each other's rows. None of the methods commit; callers own the transaction.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def clear_batch(self, batch_id: str) -> int:
        with store_step(f"Delete staged rows of batch {batch_id}"):
            result = self.db.execute(
                delete(StagedProduct)
                .where(StagedProduct.import_batch == batch_id)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0

    def count_batch(self, batch_id: str) -> int:
        return self.db.execute(
            select(func.count()).select_from(StagedProduct).where(StagedProduct.import_batch == batch_id)
        ).scalar_one()

    def duplicate_keys(self, batch_id: str, limit: int = 10) -> list[str]:
        rows = self.db.execute(
            select(StagedProduct.barcode)
            .where(StagedProduct.import_batch == batch_id)
            .group_by(StagedProduct.barcode)
            .having(func.count() > 1)
            .order_by(StagedProduct.barcode)
            .limit(limit)
        ).scalars()
        return list(rows)

    def drop_superseded_duplicates(self, batch_id: str) -> int:
        """Keep only the most recently staged row for each barcode in the batch."""
        newer = aliased(StagedProduct)
        superseded = select(StagedProduct.id).where(
            StagedProduct.import_batch == batch_id,
            select(newer.id)
            .where(
                newer.import_batch == batch_id,
                newer.barcode == StagedProduct.barcode,
                newer.id > StagedProduct.id,
            )
            .exists(),
        )
        # MySQL cannot delete from a table it also selects from, so ids are fetched first.
        removed = 0
        with store_step(f"Drop superseded duplicate rows of batch {batch_id}"):
            ids = list(self.db.execute(superseded).scalars())
            for start in range(0, len(ids), DELETE_CHUNK_SIZE):
                chunk = ids[start : start + DELETE_CHUNK_SIZE]
                result = self.db.execute(
                    delete(StagedProduct).where(StagedProduct.id.in_(chunk)).execution_options(synchronize_session=False)
                )
                removed += result.rowcount or 0
        return removed

    def purge_batch(self, batch_id: str) -> int:
        removed = self.clear_batch(batch_id)
        logger.info("batch=%s purged %s staged rows", batch_id, removed)
        return removed

    def purge_stale(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        with store_step(f"Delete staged rows older than {cutoff.isoformat()}"):
            result = self.db.execute(
                delete(StagedProduct)
                .where(StagedProduct.staged_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        logger.info("Purged %s staged rows older than %s", removed, cutoff.isoformat())
        return removed
