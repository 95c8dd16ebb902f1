"""Pytest configuration and fixtures."""
import pytest
from pathlib import Path
from sqlalchemy import BigInteger, Column, Date, DateTime, Float, ForeignKey, Integer, MetaData, String, Table

from mvckit.database import connect_database, init_db
from mvckit.model import Model

metadata = MetaData()

categories = Table(
    "categories", metadata,
    Column("id", Integer, primary_key=True),
    Column("title", String(50), nullable=False),
)

products = Table(
    "products", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("code", String(50), nullable=False),
    Column("name", String(250), nullable=False),
    Column("price", Float),
    Column("released", Date),
    Column("updated_at", DateTime),
    Column("stock", BigInteger),
)

product_images = Table(
    "product_images", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, ForeignKey("products.id")),
    Column("url", String(250)),
)


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    """Stands in for time.sleep in the login flow."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def database(tmp_path: Path):
    """Temporary SQLite file database with the test schema and seed rows."""
    db = connect_database(f"sqlite:///{tmp_path / 'test.db'}", write_timeout=5.0)
    metadata.create_all(db.engine)
    init_db(db.engine)

    with db.engine.begin() as conn:
        conn.exec_driver_sql(
            "INSERT INTO categories (id, title) VALUES (?, ?), (?, ?)",
            (1, "Truck", 2, "Car"),
        )
        conn.exec_driver_sql(
            "INSERT INTO products (id, category_id, code, name, price, released, updated_at, stock) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?), (?, ?, ?, ?, ?, ?, ?, ?), (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                1, 1, "F-150", "Ford F-150", 29990.0, "2021-05-01", "2024-01-02 03:04:05", 12,
                2, 1, "F-250", "Ford F-250", 35990.0, "2022-03-15", "2024-02-03 10:00:00", 3,
                3, 2, "FOCUS", "Ford Focus", 18500.5, None, None, None,
            ),
        )
        conn.exec_driver_sql(
            "INSERT INTO product_images (product_id, url) VALUES (?, ?), (?, ?), (?, ?)",
            (1, "f150-front.jpg", 1, "f150-back.jpg", 2, "f250.jpg"),
        )

    yield db
    db.close()


@pytest.fixture
def products_model(database):
    return Model().initialize(database, "products", "id")


@pytest.fixture
def images_model(database):
    return Model().initialize(database, "product_images", "id")


@pytest.fixture
def categories_model(database):
    return Model().initialize(database, "categories", "id")
