from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from product_import.config import ImportSettings
from product_import.models import Product, StagedProduct, ensure_schema

HEADER = "barcode,price,stock,name,description"


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = SessionLocal()
    ensure_schema(db)
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture()
def settings() -> ImportSettings:
    return ImportSettings(
        database_url="sqlite:///:memory:",
        redis_url=None,
        tuning_lock_name=f"test-tuning:{uuid4().hex}",
        tuning_lock_wait_seconds=0.0,
        load_chunk_size=250,
        log_dir=None,
        metrics_dir=None,
    )


def product_line(index: int, price: str = "9.99", stock: int = 5) -> str:
    return f'BC{index:010d},{price},{stock},"Test Product {index}","This is a description for product {index}, with details."'


@pytest.fixture()
def csv_file(tmp_path: Path) -> Callable[..., Path]:
    def _write(lines: list[str], name: str = "products.csv", header: str = HEADER) -> Path:
        path = tmp_path / name
        path.write_text("\n".join([header, *lines]) + "\n", encoding="utf-8")
        return path

    return _write


def stage(db: Session, batch_id: str, *rows: tuple[str, str, int]) -> None:
    db.add_all(
        [
            StagedProduct(
                barcode=barcode,
                price=Decimal(price),
                stock=stock,
                name=f"Name {barcode}",
                description=f"Description {barcode}",
                import_batch=batch_id,
            )
            for barcode, price, stock in rows
        ]
    )
    db.commit()


def catalog(db: Session, *rows: tuple[str, str, int]) -> list[Product]:
    products = [
        Product(
            barcode=barcode,
            price=Decimal(price),
            stock=stock,
            name=f"Catalog {barcode}",
            description="existing",
        )
        for barcode, price, stock in rows
    ]
    db.add_all(products)
    db.commit()
    return products
