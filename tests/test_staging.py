from datetime import timedelta

from sqlalchemy import select, update

from conftest import stage
from product_import.models import StagedProduct, utc_now
from product_import.staging import StagingStore


def test_counts_and_clears_are_scoped_to_batch(session):
    stage(session, "batch-a", ("BC1", "1.00", 1), ("BC2", "2.00", 2))
    stage(session, "batch-b", ("BC1", "1.00", 1))
    store = StagingStore(session)

    assert store.count_batch("batch-a") == 2
    assert store.clear_batch("batch-a") == 2
    session.commit()

    assert store.count_batch("batch-a") == 0
    assert store.count_batch("batch-b") == 1


def test_duplicate_keys_lists_repeated_barcodes(session):
    stage(session, "batch-a", ("BC2", "1.00", 1), ("BC1", "1.00", 1), ("BC2", "1.50", 3), ("BC3", "1.00", 1))
    stage(session, "batch-b", ("BC3", "1.00", 1))

    assert StagingStore(session).duplicate_keys("batch-a") == ["BC2"]
    assert StagingStore(session).duplicate_keys("batch-b") == []


def test_drop_superseded_duplicates_keeps_latest_row(session):
    stage(session, "batch-a", ("BC1", "1.00", 1), ("BC1", "1.10", 2), ("BC1", "1.20", 3), ("BC2", "5.00", 5))
    stage(session, "batch-b", ("BC1", "9.00", 9), ("BC1", "9.50", 9))
    store = StagingStore(session)

    removed = store.drop_superseded_duplicates("batch-a")
    session.commit()

    assert removed == 2
    rows = session.execute(
        select(StagedProduct.barcode, StagedProduct.stock)
        .where(StagedProduct.import_batch == "batch-a")
        .order_by(StagedProduct.barcode)
    ).all()
    assert [tuple(row) for row in rows] == [("BC1", 3), ("BC2", 5)]
    assert store.count_batch("batch-b") == 2


def test_purge_stale_removes_only_old_rows(session):
    stage(session, "old-batch", ("BC1", "1.00", 1))
    stage(session, "new-batch", ("BC2", "1.00", 1))
    session.execute(
        update(StagedProduct)
        .where(StagedProduct.import_batch == "old-batch")
        .values(staged_at=utc_now() - timedelta(days=3))
    )
    session.commit()
    store = StagingStore(session)

    removed = store.purge_stale(timedelta(hours=24))
    session.commit()

    assert removed == 1
    assert store.count_batch("old-batch") == 0
    assert store.count_batch("new-batch") == 1
