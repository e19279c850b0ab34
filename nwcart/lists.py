"""Build shopping lists from recipes and manual items."""

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Union

from nwcart.db import get_connection
from nwcart.search import build_prefix_query, sanitize_query

__all__ = ["save_recipe", "get_recipe", "find_recipe_id", "build_list"]

logger = logging.getLogger(__name__)

ManualItem = Union[str, Dict[str, Any]]


def save_recipe(
    db_path: str,
    name: str,
    ingredients: Iterable[Dict[str, Any]],
    description: Optional[str] = None,
    servings: Optional[int] = None,
    tags: Optional[List[str]] = None,
    source_url: Optional[str] = None,
) -> int:
    """Store a recipe and its ingredients, returning the recipe id.

    Each ingredient needs ``generic_name``; ``quantity`` and ``optional``
    are optional.
    """
    with get_connection(db_path) as conn:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO recipes (name, description, servings, tags, source_url)
                VALUES (?, ?, ?, ?, ?)
                """,
                (name, description, servings, json.dumps(tags or []), source_url),
            )
            recipe_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO recipe_ingredients (recipe_id, generic_name, quantity, optional, sort_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (recipe_id, ing["generic_name"], ing.get("quantity"), 1 if ing.get("optional") else 0, i)
                    for i, ing in enumerate(ingredients)
                ],
            )
    return recipe_id


def get_recipe(db_path: str, recipe_id: int) -> Optional[Dict[str, Any]]:
    """Get a recipe with its ingredients in order, or None."""
    with get_connection(db_path) as conn:
        row = conn.execute("SELECT * FROM recipes WHERE id = ?", (recipe_id,)).fetchone()
        if row is None:
            return None
        recipe = dict(row)
        recipe["ingredients"] = [
            dict(r)
            for r in conn.execute(
                "SELECT * FROM recipe_ingredients WHERE recipe_id = ? ORDER BY sort_order", (recipe_id,)
            ).fetchall()
        ]
    return recipe


def find_recipe_id(db_path: str, query: str) -> Optional[int]:
    """Best full-text match for a recipe name, or None."""
    sanitized = sanitize_query(query)
    if not sanitized:
        return None

    sql = """
        SELECT r.id
        FROM recipes_fts
        JOIN recipes r ON r.id = recipes_fts.rowid
        WHERE recipes_fts MATCH ?
        ORDER BY recipes_fts.rank
        LIMIT 1
    """
    with get_connection(db_path) as conn:
        for match in (build_prefix_query(sanitized), f'"{sanitized}"'):
            try:
                row = conn.execute(sql, (match,)).fetchone()
            except sqlite3.OperationalError:
                continue
            return row["id"] if row else None
    return None


def _merge_ingredients(recipes: List[Dict[str, Any]], manual_items: Iterable[ManualItem]) -> List[Dict[str, Any]]:
    """Collapse repeated items (case-insensitive), keeping first-seen order."""
    merged: Dict[str, Dict[str, Any]] = {}

    def _add(generic_name: str, quantity: Optional[str], source: str, optional: bool) -> None:
        key = generic_name.strip().lower()
        if key in merged:
            entry = merged[key]
            entry["sources"].append(source)
            if quantity:
                entry["quantities"].append(str(quantity))
        else:
            merged[key] = {
                "generic_name": generic_name.strip(),
                "quantities": [str(quantity)] if quantity else [],
                "sources": [source],
                "optional": optional,
            }

    for recipe in recipes:
        for ing in recipe["ingredients"]:
            _add(ing["generic_name"], ing.get("quantity"), recipe["name"], bool(ing.get("optional")))

    for item in manual_items:
        if isinstance(item, str):
            _add(item, None, "manual", False)
        else:
            _add(item["name"], item.get("quantity"), "manual", False)

    return [
        {
            "generic_name": v["generic_name"],
            "quantity": " + ".join(v["quantities"]) or None,
            "sources": v["sources"],
            "optional": v["optional"],
        }
        for v in merged.values()
    ]


def build_list(
    engine,
    recipe_ids: Iterable[int] = (),
    recipe_names: Iterable[str] = (),
    manual_items: Iterable[ManualItem] = (),
    name: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Build and store a draft shopping list.

    Recipe names are looked up by full-text search; unknown recipes are
    logged and skipped. All ingredients are resolved as one batch, with the
    recipe names as context for the semantic query.

    Args:
        engine: ResolutionEngine bound to the same database.
        recipe_ids: Recipes to include by id.
        recipe_names: Recipes to include by (approximate) name.
        manual_items: Extra items, as strings or ``{"name", "quantity"}`` dicts.
        name: List name (default: recipe names joined by " + ").
        requested_by: Who asked for the list.

    Returns:
        Dict with list_id, name, recipes, items, unresolved_count, estimated_total.
    """
    db_path = engine.db_path
    all_ids = list(recipe_ids)
    for recipe_name in recipe_names:
        recipe_id = find_recipe_id(db_path, recipe_name)
        if recipe_id is None:
            logger.warning(f"Recipe not found: {recipe_name!r}")
        else:
            all_ids.append(recipe_id)

    recipes = []
    for recipe_id in all_ids:
        recipe = get_recipe(db_path, recipe_id)
        if recipe is None:
            logger.warning(f"Recipe #{recipe_id} not found")
            continue
        recipes.append(recipe)

    ingredients = _merge_ingredients(recipes, manual_items)
    recipe_names_joined = ", ".join(r["name"] for r in recipes)
    resolutions = engine.resolve_batch(ingredients, recipe_context=recipe_names_joined or None)

    list_name = name or " + ".join(r["name"] for r in recipes) or "Shopping List"
    items = []
    rows = []
    estimated_total = 0.0
    unresolved_count = 0

    for position, (ingredient, resolution) in enumerate(resolutions):
        candidates = resolution.candidates or []
        display_name = resolution.product_name if resolution.resolved else ingredient["generic_name"]
        category = candidates[0].category if resolution.resolved and candidates else None
        price = resolution.price if resolution.resolved else None
        source = ", ".join(ingredient["sources"])

        if price:
            estimated_total += price
        if not resolution.resolved:
            unresolved_count += 1

        rows.append(
            (
                ingredient["generic_name"],
                resolution.product_id if resolution.resolved else None,
                display_name,
                ingredient["quantity"],
                category,
                source,
                price,
                position,
            )
        )
        items.append(
            {
                "generic_name": ingredient["generic_name"],
                "display_name": display_name,
                "quantity": ingredient["quantity"],
                "category": category,
                "source": source,
                "estimated_price": price,
                "resolved": resolution.resolved,
                "resolution_source": resolution.source,
                "candidates": candidates[:3],
            }
        )

    with get_connection(db_path) as conn:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO shopping_lists (name, status, requested_by, recipe_ids, notes)
                VALUES (?, 'draft', ?, ?, ?)
                """,
                (
                    list_name,
                    requested_by,
                    json.dumps([r["id"] for r in recipes]),
                    f"Recipes: {recipe_names_joined}" if recipes else None,
                ),
            )
            list_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO shopping_list_items
                    (list_id, generic_name, resolved_product_id, display_name, quantity,
                     category, source, estimated_price, sort_order)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [(list_id, *row) for row in rows],
            )

    logger.info(f"Built list #{list_id} {list_name!r}: {len(items)} items, {unresolved_count} unresolved")
    return {
        "list_id": list_id,
        "name": list_name,
        "recipes": [{"id": r["id"], "name": r["name"]} for r in recipes],
        "items": items,
        "unresolved_count": unresolved_count,
        "estimated_total": round(estimated_total, 2),
    }
