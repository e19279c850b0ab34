"""Tests for building shopping lists from recipes."""

import json

import pytest

from nwcart.db import get_connection
from nwcart.lists import build_list, find_recipe_id, get_recipe, save_recipe
from nwcart.resolve import ResolutionEngine


@pytest.fixture
def recipes(db_path):
    curry = save_recipe(
        db_path,
        "Thai Green Curry",
        [
            {"generic_name": "coconut milk", "quantity": "400ml"},
            {"generic_name": "chicken breast", "quantity": "500g"},
            {"generic_name": "green curry paste", "quantity": "2 tbsp"},
        ],
        tags=["thai", "dinner"],
    )
    pancakes = save_recipe(
        db_path,
        "Pancakes",
        [
            {"generic_name": "Milk", "quantity": "1 cup"},
            {"generic_name": "eggs", "quantity": "2"},
            {"generic_name": "flour", "quantity": "1 cup"},
            {"generic_name": "blueberries", "optional": True},
        ],
    )
    return {"curry": curry, "pancakes": pancakes}


@pytest.fixture
def engine(db_path):
    with ResolutionEngine(db_path) as engine:
        yield engine


class TestRecipes:

    def test_get_recipe(self, db_path, recipes):
        recipe = get_recipe(db_path, recipes["pancakes"])
        assert recipe["name"] == "Pancakes"
        assert [i["generic_name"] for i in recipe["ingredients"]] == ["Milk", "eggs", "flour", "blueberries"]
        assert recipe["ingredients"][3]["optional"] == 1

    def test_get_missing_recipe(self, db_path):
        assert get_recipe(db_path, 999) is None

    def test_find_by_partial_name(self, db_path, recipes):
        assert find_recipe_id(db_path, "thai curry") == recipes["curry"]
        assert find_recipe_id(db_path, "pancake") == recipes["pancakes"]

    def test_find_unknown(self, db_path, recipes):
        assert find_recipe_id(db_path, "lasagne") is None
        assert find_recipe_id(db_path, '"()') is None


class TestBuildList:

    def test_builds_and_stores_list(self, db_path, engine, recipes):
        result = build_list(
            engine,
            recipe_names=["thai curry", "pancakes"],
            manual_items=["milk", {"name": "Tuna", "quantity": "2 cans"}],
            requested_by="sam",
        )

        assert result["name"] == "Thai Green Curry + Pancakes"
        assert [r["name"] for r in result["recipes"]] == ["Thai Green Curry", "Pancakes"]

        items = {i["generic_name"].lower(): i for i in result["items"]}
        assert list(items) == [
            "coconut milk",
            "chicken breast",
            "green curry paste",
            "milk",
            "eggs",
            "flour",
            "blueberries",
            "tuna",
        ]
        # Recipe milk and the manual milk merge into one line
        assert items["milk"]["source"] == "Pancakes, manual"
        assert items["milk"]["quantity"] == "1 cup"
        assert items["tuna"]["quantity"] == "2 cans"

        assert items["coconut milk"]["display_name"] == "Pams Coconut Milk"
        assert items["coconut milk"]["category"] == "Pantry"
        assert items["coconut milk"]["estimated_price"] == 2.50
        assert items["flour"]["resolved"] is False
        assert items["flour"]["display_name"] == "flour"
        assert all(len(i["candidates"]) <= 3 for i in result["items"])

        unresolved = [i for i in result["items"] if not i["resolved"]]
        assert result["unresolved_count"] == len(unresolved)
        expected_total = sum(i["estimated_price"] for i in result["items"] if i["estimated_price"])
        assert result["estimated_total"] == pytest.approx(expected_total)

        with get_connection(db_path) as conn:
            saved = conn.execute("SELECT * FROM shopping_lists WHERE id = ?", (result["list_id"],)).fetchone()
            rows = conn.execute(
                "SELECT * FROM shopping_list_items WHERE list_id = ? ORDER BY sort_order", (result["list_id"],)
            ).fetchall()
        assert saved["status"] == "draft"
        assert saved["requested_by"] == "sam"
        assert json.loads(saved["recipe_ids"]) == [recipes["curry"], recipes["pancakes"]]
        assert saved["notes"] == "Recipes: Thai Green Curry, Pancakes"
        assert [r["generic_name"].lower() for r in rows] == list(items)
        assert rows[0]["resolved_product_id"] == 1

    def test_quantities_are_combined(self, engine, recipes):
        result = build_list(engine, recipe_ids=[recipes["pancakes"], recipes["pancakes"]])
        eggs = next(i for i in result["items"] if i["generic_name"] == "eggs")
        assert eggs["quantity"] == "2 + 2"
        assert eggs["source"] == "Pancakes, Pancakes"

    def test_recipe_names_steer_resolution(self, db_path, recipes):
        class RecordingEngine(ResolutionEngine):
            def resolve_batch(self, items, recipe_context=None, **kwargs):
                self.seen_context = recipe_context
                return super().resolve_batch(items, recipe_context=recipe_context, **kwargs)

        with RecordingEngine(db_path) as engine:
            build_list(engine, recipe_ids=[recipes["curry"], recipes["pancakes"]])
        assert engine.seen_context == "Thai Green Curry, Pancakes"

    def test_unknown_recipes_are_skipped(self, engine, recipes, caplog):
        result = build_list(engine, recipe_names=["lasagne"], manual_items=["eggs"])
        assert result["recipes"] == []
        assert result["name"] == "Shopping List"
        assert [i["generic_name"] for i in result["items"]] == ["eggs"]
        assert "Recipe not found" in caplog.text

    def test_custom_name(self, engine, recipes):
        result = build_list(engine, manual_items=["eggs"], name="Weekly shop")
        assert result["name"] == "Weekly shop"
        assert result["estimated_total"] == pytest.approx(8.99)
