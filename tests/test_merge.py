from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import catalog, stage
from product_import.errors import MergeError
from product_import.merge import MergeEngine, MergeResult
from product_import.models import Product, StagedProduct

EARLIER = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _by_barcode(session) -> dict[str, Product]:
    return {product.barcode: product for product in session.execute(select(Product)).scalars()}


def test_merge_into_empty_catalog_inserts_each_barcode(session):
    stage(session, "batch-a", ("BC0000000001", "9.99", 5), ("BC0000000002", "19.50", 0), ("BC0000000003", "1.00", 7))

    result = MergeEngine(session).merge("batch-a")

    assert result == MergeResult(inserted=3, updated=0)
    products = _by_barcode(session)
    assert set(products) == {"BC0000000001", "BC0000000002", "BC0000000003"}
    assert products["BC0000000002"].price == Decimal("19.50")
    assert products["BC0000000001"].name == "Name BC0000000001"
    for product in products.values():
        assert product.created_at is not None
        assert product.created_at == product.updated_at


def test_merge_skips_rows_whose_values_already_match(session):
    catalog(session, ("BC0000000001", "9.99", 5), ("BC0000000002", "4.25", 12))
    for product in session.execute(select(Product)).scalars():
        product.updated_at = EARLIER
    session.commit()
    stage(session, "batch-a", ("BC0000000001", "9.99", 5), ("BC0000000002", "4.25", 12))

    result = MergeEngine(session).merge("batch-a")

    assert result.inserted == 0
    assert result.updated == 0
    for product in _by_barcode(session).values():
        assert product.updated_at.replace(tzinfo=None) == EARLIER.replace(tzinfo=None)


def test_stock_only_change_updates_single_record(session):
    catalog(session, ("BC0000000001", "9.99", 5), ("BC0000000002", "4.25", 12))
    for product in session.execute(select(Product)).scalars():
        product.updated_at = EARLIER
    session.commit()
    stage(session, "batch-a", ("BC0000000001", "9.99", 5), ("BC0000000002", "4.25", 11))

    result = MergeEngine(session).merge("batch-a")

    assert result == MergeResult(inserted=0, updated=1)
    products = _by_barcode(session)
    assert products["BC0000000002"].stock == 11
    assert products["BC0000000002"].price == Decimal("4.25")
    assert products["BC0000000002"].updated_at.replace(tzinfo=None) > EARLIER.replace(tzinfo=None)
    assert products["BC0000000001"].price == Decimal("9.99")
    assert products["BC0000000001"].updated_at.replace(tzinfo=None) == EARLIER.replace(tzinfo=None)


def test_existing_barcode_with_new_stock_scenario(session):
    catalog(session, ("BC0000000001", "9.99", 3))
    stage(session, "batch-a", ("BC0000000001", "9.99", 5))

    result = MergeEngine(session).merge("batch-a")

    product = session.execute(select(Product).where(Product.barcode == "BC0000000001")).scalar_one()
    assert product.stock == 5
    assert product.price == Decimal("9.99")
    assert result.updated == 1
    assert result.inserted == 0


def test_update_keeps_name_and_description(session):
    catalog(session, ("BC0000000001", "9.99", 3))
    stage(session, "batch-a", ("BC0000000001", "12.00", 3))

    MergeEngine(session).merge("batch-a")

    product = session.execute(select(Product)).scalar_one()
    assert product.price == Decimal("12.00")
    assert product.name == "Catalog BC0000000001"
    assert product.description == "existing"


def test_mixed_batch_counts_add_up(session):
    catalog(session, ("BC0000000001", "9.99", 3), ("BC0000000002", "5.00", 1), ("BC0000000003", "7.00", 2))
    stage(
        session,
        "batch-a",
        ("BC0000000001", "9.99", 3),
        ("BC0000000002", "5.50", 1),
        ("BC0000000003", "7.00", 9),
        ("BC0000000004", "2.00", 4),
        ("BC0000000005", "3.00", 6),
    )

    result = MergeEngine(session).merge("batch-a")

    assert result.inserted == 2
    assert result.updated == 2
    assert result.total_affected == result.inserted + result.updated == 4


def test_merge_reads_only_its_own_batch(session):
    catalog(session, ("BC0000000001", "9.99", 3))
    stage(session, "batch-a", ("BC0000000002", "1.00", 1))
    stage(session, "batch-b", ("BC0000000001", "99.99", 99), ("BC0000000003", "3.00", 3))

    result = MergeEngine(session).merge("batch-a")

    assert result == MergeResult(inserted=1, updated=0)
    products = _by_barcode(session)
    assert set(products) == {"BC0000000001", "BC0000000002"}
    assert products["BC0000000001"].stock == 3


def test_merge_can_purge_its_staged_rows(session):
    stage(session, "batch-a", ("BC0000000001", "9.99", 5))
    stage(session, "batch-b", ("BC0000000002", "9.99", 5))

    MergeEngine(session, purge_staging=True).merge("batch-a")

    remaining = session.execute(select(StagedProduct.import_batch)).scalars().all()
    assert remaining == ["batch-b"]


def test_rerunning_merge_is_idempotent(session):
    stage(session, "batch-a", ("BC0000000001", "9.99", 5), ("BC0000000002", "1.99", 2))
    engine = MergeEngine(session)

    first = engine.merge("batch-a")
    second = engine.merge("batch-a")

    assert first == MergeResult(inserted=2, updated=0)
    assert second == MergeResult(inserted=0, updated=0)
    assert session.query(Product).count() == 2


class FailingUpdateMergeEngine(MergeEngine):
    def _update_changed(self, batch_id, merged_at):
        raise OperationalError("UPDATE products", {}, Exception("Lock wait timeout exceeded"))


def test_failed_update_rolls_back_inserts(session):
    catalog(session, ("BC0000000001", "9.99", 3))
    stage(session, "batch-a", ("BC0000000001", "9.99", 5), ("BC0000000002", "1.00", 1))

    with pytest.raises(MergeError) as excinfo:
        FailingUpdateMergeEngine(session).merge("batch-a")

    assert excinfo.value.batch_id == "batch-a"
    assert excinfo.value.to_dict()["code"] == "merge_error"
    products = _by_barcode(session)
    assert set(products) == {"BC0000000001"}
    assert products["BC0000000001"].stock == 3


def test_merge_logs_each_store_step(session, caplog):
    caplog.set_level("INFO", logger="product_import")
    catalog(session, ("BC0000000001", "9.99", 5))
    stage(session, "batch-a", ("BC0000000001", "4.00", 5), ("BC0000000002", "1.00", 1))

    MergeEngine(session, purge_staging=True).merge("batch-a")

    assert caplog.messages.index("Executing: Insert new products from batch batch-a") < caplog.messages.index(
        "Success: Insert new products from batch batch-a"
    )
    assert "Success: Update changed products from batch batch-a" in caplog.messages
    assert "Success: Delete staged rows of batch batch-a" in caplog.messages
    assert not [message for message in caplog.messages if message.startswith("Failed:")]
