"""Shared test fixtures: a temporary catalog database and stand-in embedders."""

import logging
import re
import time
import zlib
from typing import List, Sequence
from unittest.mock import MagicMock

import pytest

from nwcart.db import init_db, upsert_product
from nwcart.history import record_purchase

# (name, generic_name, category, price, in_stock, on_special); ids follow list order
CATALOG = [
    ("Pams Coconut Milk", "coconut milk", "Pantry", 2.50, True, False),            # 1
    ("Pams Light Coconut Milk", "coconut milk", "Pantry", 2.80, False, False),     # 2
    ("Anchor Blue Milk 2L", "milk", "Chilled", 4.29, True, False),                 # 3
    ("Pams Standard Milk 2L", "milk", "Chilled", 4.49, True, True),                # 4
    ("Meadow Fresh Lite Milk 2L", "milk", "Chilled", 2.99, False, False),          # 5
    ("Pams Chicken Breast", "chicken breast", "Meat", 12.99, True, False),         # 6
    ("Tegel Chicken Breast Fillets 1kg", "chicken breast", "Meat", 14.99, True, False),  # 7
    ("Vogels Toast Bread", "bread", "Bakery", 5.20, True, False),                  # 8
    ("Pams White Toast Bread", "bread", "Bakery", 1.80, True, True),               # 9
    ("Scotch Fillet Steak", "steaks", "Meat", 18.99, True, False),                 # 10
    ("Hellers Beef Schnitzel", "beef steaks & schnitzel", "Meat", 9.99, True, False),  # 11
    ("Pams Free Range Eggs 12pk", "eggs", "Chilled", 8.99, True, False),           # 12
    ("Sealord Tuna in Springwater 185g", "tuna", "Pantry", 2.80, True, False),     # 13
    ("Kara Coconut Cream 400ml", "coconut cream", "Pantry", 2.20, True, False),    # 14
]


class FakeEmbedder:
    """Deterministic bag-of-words embedder: each word hashes into one slot."""

    model = "fake-bow"

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions
        self.calls = 0

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            vec = [0.0] * self.dimensions
            for word in re.findall(r"[a-z0-9]+", text.lower()):
                vec[zlib.crc32(word.encode()) % self.dimensions] += 1.0
            vectors.append(vec)
        return vectors

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]


class FailingEmbedder:
    """Embedder whose provider is always down."""

    model = "fake-down"

    def embed_batch(self, texts):
        raise ConnectionError("embedding service unavailable")

    def embed(self, text):
        raise ConnectionError("embedding service unavailable")


class SlowEmbedder(FakeEmbedder):
    """Embedder that answers after ``delay`` seconds."""

    def __init__(self, delay: float = 1.0, dimensions: int = 256):
        super().__init__(dimensions)
        self.delay = delay

    def embed(self, text: str) -> List[float]:
        time.sleep(self.delay)
        return super().embed(text)


@pytest.fixture(autouse=True)
def reset_nwcart_logger():
    """Undo any setup_logging() done by a test (the CLI configures logging)."""
    yield
    logger = logging.getLogger("nwcart")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def empty_db(tmp_path):
    """Initialized database with no rows."""
    db_path = str(tmp_path / "nwcart.db")
    init_db(db_path)
    return db_path


@pytest.fixture
def db_path(empty_db):
    """Database seeded with the test catalog."""
    for i, (name, generic, category, price, in_stock, on_special) in enumerate(CATALOG, start=1):
        upsert_product(
            empty_db,
            name,
            nw_product_id=f"NW-{i:04d}",
            brand=name.split()[0],
            generic_name=generic,
            category=category,
            price=price,
            in_stock=in_stock,
            on_special=on_special,
        )
    return empty_db


@pytest.fixture
def buy(db_path):
    """Record ``times`` separate purchases of a product."""
    counter = {"n": 0}

    def _buy(product_id: int, times: int = 1, order_date: str = "2024-03-01", quantity: float = 1):
        for _ in range(times):
            counter["n"] += 1
            record_purchase(
                db_path,
                order_date,
                [{"raw_name": f"product {product_id}", "product_id": product_id, "quantity": quantity}],
                order_ref=f"ORD-{counter['n']}",
            )

    return _buy


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


@pytest.fixture
def slow_embedder():
    return SlowEmbedder(delay=1.0)


@pytest.fixture
def mock_openai_client():
    """Create a mock OpenAI client for testing without API calls."""
    client = MagicMock()
    return client
