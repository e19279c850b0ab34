"""SQLite database schema and catalog helpers."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from nwcart.config import DB_PATH
from nwcart.models import Product

__all__ = [
    "DEFAULT_DB_PATH",
    "get_connection",
    "init_db",
    "upsert_product",
    "get_product",
    "get_products_by_ids",
    "escape_like",
    "query_products_by_name_words",
    "get_purchase_counts",
    "get_product_count",
    "get_table_counts",
]

DEFAULT_DB_PATH = DB_PATH

_SCHEMA = [
    # Catalog
    """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        store_id TEXT NOT NULL DEFAULT '',
        nw_product_id TEXT UNIQUE,
        name TEXT NOT NULL,
        brand TEXT,
        generic_name TEXT,
        category TEXT,
        subcategory TEXT,
        price REAL,
        unit_price TEXT,
        unit_size TEXT,
        image_url TEXT,
        in_stock INTEGER NOT NULL DEFAULT 1,
        on_special INTEGER NOT NULL DEFAULT 0,
        special_price REAL,
        last_scraped TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    # Full-text mirror of the searchable product columns
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS products_fts USING fts5(
        name,
        brand,
        generic_name,
        category,
        subcategory,
        content='products',
        content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS products_ai AFTER INSERT ON products BEGIN
        INSERT INTO products_fts(rowid, name, brand, generic_name, category, subcategory)
        VALUES (new.id, new.name, new.brand, new.generic_name, new.category, new.subcategory);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS products_ad AFTER DELETE ON products BEGIN
        INSERT INTO products_fts(products_fts, rowid, name, brand, generic_name, category, subcategory)
        VALUES ('delete', old.id, old.name, old.brand, old.generic_name, old.category, old.subcategory);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS products_au AFTER UPDATE ON products BEGIN
        INSERT INTO products_fts(products_fts, rowid, name, brand, generic_name, category, subcategory)
        VALUES ('delete', old.id, old.name, old.brand, old.generic_name, old.category, old.subcategory);
        INSERT INTO products_fts(rowid, name, brand, generic_name, category, subcategory)
        VALUES (new.id, new.name, new.brand, new.generic_name, new.category, new.subcategory);
    END
    """,
    # Product vectors, float32 little-endian blobs
    """
    CREATE TABLE IF NOT EXISTS product_embeddings (
        product_id INTEGER PRIMARY KEY,
        model TEXT NOT NULL,
        dimensions INTEGER NOT NULL,
        embedding BLOB NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE
    )
    """,
    # Preferences: one row per (generic_name, context)
    """
    CREATE TABLE IF NOT EXISTS brand_preferences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        generic_name TEXT NOT NULL,
        context TEXT NOT NULL DEFAULT 'default',
        preferred_product_id INTEGER NOT NULL,
        confidence REAL NOT NULL DEFAULT 0.9,
        source TEXT NOT NULL DEFAULT 'explicit',
        strategy TEXT NOT NULL DEFAULT 'fixed',
        notes TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE (generic_name, context),
        FOREIGN KEY (preferred_product_id) REFERENCES products(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS preference_candidates (
        preference_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (preference_id, product_id),
        FOREIGN KEY (preference_id) REFERENCES brand_preferences(id) ON DELETE CASCADE
    )
    """,
    # Purchase history
    """
    CREATE TABLE IF NOT EXISTS purchases (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_ref TEXT UNIQUE,
        order_date TEXT,
        total REAL,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS purchase_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        purchase_id INTEGER NOT NULL,
        raw_name TEXT NOT NULL,
        product_id INTEGER,
        quantity REAL DEFAULT 1,
        price REAL,
        match_confidence REAL,
        FOREIGN KEY (purchase_id) REFERENCES purchases(id) ON DELETE CASCADE,
        FOREIGN KEY (product_id) REFERENCES products(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS purchase_frequency (
        generic_name TEXT PRIMARY KEY,
        avg_days_between REAL,
        last_purchased TEXT,
        purchase_count INTEGER NOT NULL DEFAULT 0,
        typical_quantity REAL,
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    # Recipes (ingestion lives elsewhere; the list builder reads them)
    """
    CREATE TABLE IF NOT EXISTS recipes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        servings INTEGER,
        tags TEXT,
        source_url TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS recipes_fts USING fts5(
        name,
        description,
        tags,
        content='recipes',
        content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS recipes_ai AFTER INSERT ON recipes BEGIN
        INSERT INTO recipes_fts(rowid, name, description, tags)
        VALUES (new.id, new.name, new.description, new.tags);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS recipes_ad AFTER DELETE ON recipes BEGIN
        INSERT INTO recipes_fts(recipes_fts, rowid, name, description, tags)
        VALUES ('delete', old.id, old.name, old.description, old.tags);
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS recipe_ingredients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        recipe_id INTEGER NOT NULL,
        generic_name TEXT NOT NULL,
        quantity TEXT,
        optional INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (recipe_id) REFERENCES recipes(id) ON DELETE CASCADE
    )
    """,
    # Shopping lists
    """
    CREATE TABLE IF NOT EXISTS shopping_lists (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        requested_by TEXT,
        recipe_ids TEXT,
        notes TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shopping_list_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        list_id INTEGER NOT NULL,
        generic_name TEXT NOT NULL,
        resolved_product_id INTEGER,
        display_name TEXT,
        quantity TEXT,
        category TEXT,
        source TEXT,
        estimated_price REAL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (list_id) REFERENCES shopping_lists(id) ON DELETE CASCADE
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_products_generic_name ON products(generic_name)",
    "CREATE INDEX IF NOT EXISTS idx_products_category ON products(category)",
    "CREATE INDEX IF NOT EXISTS idx_products_brand ON products(brand)",
    "CREATE INDEX IF NOT EXISTS idx_purchase_items_product ON purchase_items(product_id)",
    "CREATE INDEX IF NOT EXISTS idx_purchase_items_purchase ON purchase_items(purchase_id)",
    "CREATE INDEX IF NOT EXISTS idx_recipe_ingredients_recipe ON recipe_ingredients(recipe_id)",
    "CREATE INDEX IF NOT EXISTS idx_shopping_list_items_list ON shopping_list_items(list_id)",
]

# Columns the ingester may write through upsert_product
_PRODUCT_COLUMNS = (
    "store_id",
    "name",
    "brand",
    "generic_name",
    "category",
    "subcategory",
    "price",
    "unit_price",
    "unit_size",
    "image_url",
    "in_stock",
    "on_special",
    "special_price",
)


@contextmanager
def get_connection(db_path: str = DEFAULT_DB_PATH) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database connections."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        cursor = conn.cursor()
        for statement in _SCHEMA + _INDEXES:
            cursor.execute(statement)
        conn.commit()


def upsert_product(db_path: str, name: str, nw_product_id: Optional[str] = None, **columns: Any) -> int:
    """Insert or update a product, returning its ID.

    Products are keyed on ``nw_product_id`` when given; without one a new
    row is always inserted.
    """
    unknown = set(columns) - set(_PRODUCT_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown product columns: {sorted(unknown)}")

    values: Dict[str, Any] = {"name": name, **columns}
    for flag in ("in_stock", "on_special"):
        if flag in values:
            values[flag] = 1 if values[flag] else 0

    with get_connection(db_path) as conn:
        cursor = conn.cursor()

        existing = None
        if nw_product_id is not None:
            cursor.execute("SELECT id FROM products WHERE nw_product_id = ?", (nw_product_id,))
            existing = cursor.fetchone()

        if existing:
            set_clause = ", ".join(f"{col} = ?" for col in values)
            cursor.execute(
                f"UPDATE products SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
                list(values.values()) + [existing["id"]],
            )
            product_id = existing["id"]
        else:
            cols = ["nw_product_id"] + list(values)
            placeholders = ", ".join("?" for _ in cols)
            cursor.execute(
                f"INSERT INTO products ({', '.join(cols)}) VALUES ({placeholders})",
                [nw_product_id] + list(values.values()),
            )
            product_id = cursor.lastrowid

        conn.commit()
        return product_id


def get_product(db_path: str, product_id: int) -> Optional[Product]:
    """Get a single product by id, or None."""
    products = get_products_by_ids(db_path, [product_id])
    return products[0] if products else None


def get_products_by_ids(db_path: str, ids: Iterable[int]) -> List[Product]:
    """Load products by id, in the order requested. Unknown ids are skipped."""
    wanted = [int(i) for i in ids]
    if not wanted:
        return []

    placeholders = ",".join("?" for _ in wanted)
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"SELECT * FROM products WHERE id IN ({placeholders})", wanted
        ).fetchall()

    by_id = {row["id"]: Product.from_row(row) for row in rows}
    seen = set()
    ordered = []
    for product_id in wanted:
        if product_id in by_id and product_id not in seen:
            ordered.append(by_id[product_id])
            seen.add(product_id)
    return ordered


def escape_like(text: str) -> str:
    """Escape ``\\``, ``%`` and ``_`` for a LIKE pattern using ``ESCAPE '\\'``."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def query_products_by_name_words(
    db_path: str,
    words: Sequence[str],
    limit: int = 1,
) -> List[Tuple[Product, int]]:
    """Find purchased products whose name contains every word.

    Matches against ``products.name`` only, treating each word as a literal
    substring. Returns ``(product, buy_count)`` pairs ordered by buy count
    descending, then price ascending with unpriced products last.
    """
    if not words:
        return []

    conditions = " AND ".join("LOWER(p.name) LIKE ? ESCAPE '\\'" for _ in words)
    params: List[Any] = [f"%{escape_like(w.lower())}%" for w in words]
    params.append(limit)

    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT p.*, COUNT(*) AS buy_count
            FROM purchase_items pi
            JOIN products p ON p.id = pi.product_id
            WHERE pi.product_id IS NOT NULL AND ({conditions})
            GROUP BY pi.product_id
            ORDER BY buy_count DESC, p.price IS NULL, p.price ASC, p.id ASC
            LIMIT ?
            """,
            params,
        ).fetchall()

    return [(Product.from_row(row), row["buy_count"]) for row in rows]


def get_purchase_counts(db_path: str = DEFAULT_DB_PATH) -> Dict[int, int]:
    """Map product_id -> number of purchase lines for that product."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """
            SELECT product_id, COUNT(*) AS buy_count
            FROM purchase_items
            WHERE product_id IS NOT NULL
            GROUP BY product_id
            """
        ).fetchall()
    return {row["product_id"]: row["buy_count"] for row in rows}


def get_product_count(db_path: str = DEFAULT_DB_PATH, in_stock_only: bool = False) -> int:
    """Get the total number of catalog products."""
    query = "SELECT COUNT(*) AS count FROM products"
    if in_stock_only:
        query += " WHERE in_stock = 1"
    with get_connection(db_path) as conn:
        return conn.execute(query).fetchone()["count"]


def get_table_counts(db_path: str = DEFAULT_DB_PATH) -> Dict[str, int]:
    """Row counts for the tables shown by ``nwcart stats``."""
    tables = [
        "products",
        "product_embeddings",
        "brand_preferences",
        "purchases",
        "purchase_items",
        "purchase_frequency",
        "recipes",
        "shopping_lists",
    ]
    counts = {}
    with get_connection(db_path) as conn:
        for table in tables:
            counts[table] = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()["count"]
    return counts
