"""Embedding provider and catalog embedding job.

Product vectors are stored as float32 blobs in ``product_embeddings``; query
vectors must come from the same model and dimensions so distances are
comparable.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from nwcart.config import DB_PATH, EMBEDDING_BATCH_SIZE, EMBEDDING_DIMENSIONS, EMBEDDING_MODEL
from nwcart.db import get_connection

__all__ = [
    "OpenAIEmbedder",
    "vector_to_blob",
    "blob_to_vector",
    "build_embedding_text",
    "embed_products",
]

logger = logging.getLogger(__name__)


def _get_openai_client():
    """Get OpenAI client (lazy initialization)."""
    from openai import OpenAI
    return OpenAI()


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings endpoint.

    Errors (missing key, network, rate limits) propagate to the caller; the
    semantic index treats any failure as "no semantic results".
    """

    def __init__(
        self,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        client: Any = None,
    ):
        self.model = model
        self.dimensions = dimensions
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_openai_client()
        return self._client

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        response = self.client.embeddings.create(
            model=self.model,
            input=[t.replace("\n", " ") for t in texts],
            dimensions=self.dimensions,
        )
        return [item.embedding for item in response.data]

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]


def vector_to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


def build_embedding_text(product: Dict[str, Any]) -> str:
    """Text embedded for a product: name, brand, generic name and categories."""
    parts = [
        product.get("name"),
        product.get("brand"),
        product.get("generic_name"),
        product.get("category"),
        product.get("subcategory"),
    ]
    return " ".join(str(p) for p in parts if p)


def embed_products(
    db_path: str = DB_PATH,
    embedder: Optional[Any] = None,
    batch_size: int = EMBEDDING_BATCH_SIZE,
) -> int:
    """Embed every product that has no vector yet.

    A failing batch is logged and skipped so one bad request does not lose
    the rest of the run.

    Args:
        db_path: Path to SQLite database.
        embedder: Object with ``embed_batch(texts)``; defaults to OpenAIEmbedder.
        batch_size: Products per embeddings request.

    Returns:
        Number of products embedded.
    """
    embedder = embedder or OpenAIEmbedder()
    model = getattr(embedder, "model", EMBEDDING_MODEL)

    with get_connection(db_path) as conn:
        rows = conn.execute(
            """
            SELECT p.id, p.name, p.brand, p.generic_name, p.category, p.subcategory
            FROM products p
            LEFT JOIN product_embeddings e ON e.product_id = p.id
            WHERE e.product_id IS NULL
            ORDER BY p.id
            """
        ).fetchall()
    products = [dict(row) for row in rows]

    logger.info(f"Found {len(products)} products needing embeddings")
    if not products:
        return 0

    embedded = 0
    total_batches = (len(products) + batch_size - 1) // batch_size
    for start in range(0, len(products), batch_size):
        batch = products[start:start + batch_size]
        batch_no = start // batch_size + 1
        logger.info(f"Embedding batch {batch_no}/{total_batches} ({len(batch)} products)")

        try:
            vectors = embedder.embed_batch([build_embedding_text(p) for p in batch])
        except Exception as e:
            logger.error(f"Embedding batch {batch_no} failed: {e}")
            continue
        if len(vectors) != len(batch):
            logger.warning(
                f"Embedding batch {batch_no} returned {len(vectors)} vectors for {len(batch)} products"
            )

        with get_connection(db_path) as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO product_embeddings (product_id, model, dimensions, embedding)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (p["id"], model, len(vector), vector_to_blob(vector))
                    for p, vector in zip(batch, vectors)
                ],
            )
            conn.commit()
        embedded += min(len(vectors), len(batch))

    logger.info(f"Embedded {embedded} products")
    return embedded
