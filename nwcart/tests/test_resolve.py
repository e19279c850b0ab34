"""Tests for the resolution pipeline: preference, purchase history, then search."""

import json
import logging
from unittest.mock import MagicMock

import pytest

from nwcart.config import ScoringWeights
from nwcart.embeddings import embed_products
from nwcart.models import MATCH_BOTH, MATCH_FTS, MATCH_VEC, ResolutionError, ResolutionResult, ScoredCandidate
from nwcart.preferences import PreferenceStore
from nwcart.resolve import (
    ResolutionEngine,
    build_checkout_items,
    checkout_alternatives,
    item_name,
    triage_resolution,
)


@pytest.fixture
def engine(db_path):
    with ResolutionEngine(db_path) as engine:
        yield engine


@pytest.fixture
def prefs(db_path):
    return PreferenceStore(db_path)


class TestPreferenceStage:

    def test_fixed_preference_wins_over_history_and_search(self, engine, prefs, buy):
        """The preferred bread is returned even though another bread is on special and bought often."""
        buy(9, times=5)
        prefs.set("bread", 8)

        result = engine.resolve("bread")

        assert result.resolved
        assert result.source == "preference"
        assert result.product_id == 8
        assert result.product_name == "Vogels Toast Bread"
        assert result.confidence == 0.9
        assert result.strategy == "fixed"

    def test_context_fallback(self, engine, prefs):
        prefs.set("bread", 8)
        assert engine.resolve("bread", context="weekend").product_id == 8

    def test_irrelevant_preference_is_vetoed(self, engine, prefs):
        """A steak preference never answers a schnitzel query."""
        prefs.set("schnitzel", 10)

        result = engine.resolve("schnitzel")

        assert result.product_id != 10
        assert result.source == "search"
        assert 11 in [c.id for c in result.candidates]
        assert 10 not in [c.id for c in result.candidates]

    def test_veto_falls_through_to_history(self, engine, prefs, buy):
        prefs.set("chicken breast", 3)
        buy(6)
        result = engine.resolve("chicken breast")
        assert result.source == "purchase_history"
        assert result.product_id == 6

    def test_low_confidence_preference_is_ignored(self, engine, prefs):
        prefs.set("bread", 8, source="history", confidence=0.4)
        result = engine.resolve("bread")
        assert result.source == "search"
        assert result.product_id == 9

    def test_dynamic_lowest_price(self, engine, prefs):
        prefs.set("milk", 4, strategy="lowest_price", candidate_ids=[3, 4, 5])
        result = engine.resolve("milk")
        assert result.source == "preference"
        assert result.product_id == 3
        assert result.strategy == "lowest_price"

    def test_dynamic_on_special(self, engine, prefs):
        prefs.set("milk", 3, strategy="on_special", candidate_ids=[3, 4, 5])
        assert engine.resolve("milk").product_id == 4

    def test_malformed_notes_fall_back_to_anchor(self, engine, prefs):
        prefs.set("milk", 4, strategy="lowest_price", notes="{oops")
        result = engine.resolve("milk")
        assert result.source == "preference"
        assert result.product_id == 4
        assert result.product_name == "Pams Standard Milk 2L"

    def test_unknown_candidates_fall_back_to_anchor(self, engine, prefs):
        prefs.set("milk", 5, strategy="on_special", candidate_ids=[9999])
        assert engine.resolve("milk").product_id == 5


class TestPurchaseHistoryStage:

    def test_shortcut_confidence(self, engine, buy):
        buy(6, times=5)
        result = engine.resolve("chicken breast")
        assert result.resolved
        assert result.source == "purchase_history"
        assert result.product_id == 6
        assert result.confidence == pytest.approx(0.8)

    def test_single_purchase(self, engine, buy):
        buy(12)
        assert engine.resolve("eggs").confidence == pytest.approx(0.64)

    def test_confidence_is_capped(self, engine, buy):
        buy(12, times=20)
        assert engine.resolve("eggs").confidence == pytest.approx(0.9)

    def test_partial_word_match_goes_to_search(self, engine, buy):
        buy(6, times=5)
        result = engine.resolve("chicken thigh")
        assert result.source == "none"
        assert result.candidates == []

    def test_underscore_is_not_a_wildcard(self, engine, buy):
        """'_una' must not shortcut to the tuna bought before."""
        buy(13, times=2)
        assert engine.resolve("_una").source != "purchase_history"


class TestSearchStage:

    def test_in_stock_product_wins(self, engine):
        """Both coconut milks match; the out-of-stock one is penalised."""
        result = engine.resolve("coconut milk")

        assert result.resolved
        assert result.source == "search"
        assert result.product_id == 1
        assert result.confidence == pytest.approx(0.55)
        scores = {c.id: c.score for c in result.candidates}
        assert scores[2] == pytest.approx(0.35)

    def test_candidates_sorted_and_limited(self, engine):
        result = engine.resolve("milk")
        assert result.product_id == 4
        assert len(result.candidates) <= 5
        scores = [c.score for c in result.candidates]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_below_threshold_is_unresolved_with_candidates(self, engine):
        result = engine.resolve("cream")
        assert not result.resolved
        assert result.source == "search"
        assert [c.id for c in result.candidates] == [14]
        assert result.product_id is None

    def test_no_candidates(self, engine):
        result = engine.resolve("xylophone")
        assert not result.resolved
        assert result.source == "none"
        assert result.candidates == []

    @pytest.mark.parametrize("name", ["", "   ", "\t\n"])
    def test_blank_names(self, engine, name):
        result = engine.resolve(name)
        assert not result.resolved
        assert result.candidates == []

    def test_non_string_name_is_a_contract_error(self, engine):
        with pytest.raises(ResolutionError):
            engine.resolve(None)

    def test_deterministic(self, engine, prefs, buy):
        buy(8, times=2)
        prefs.set("milk", 3, strategy="lowest_price", candidate_ids=[3, 4])
        for name in ("milk", "bread", "coconut milk", "cream", "xylophone"):
            assert engine.resolve(name) == engine.resolve(name)

    def test_recipe_context_steers_semantic_query(self, db_path):
        searcher = MagicMock()
        searcher.search.return_value = []
        engine = ResolutionEngine(db_path, searcher=searcher)

        engine.resolve("coconut milk", recipe_context="Thai Green Curry")
        engine.resolve("rice")

        assert searcher.search.call_args_list[0].kwargs["semantic_query"] == "coconut milk for Thai Green Curry"
        assert searcher.search.call_args_list[1].kwargs["semantic_query"] == "rice"

    def test_with_semantic_search(self, db_path, fake_embedder):
        embed_products(db_path, embedder=fake_embedder)
        with ResolutionEngine(db_path, embedder=fake_embedder) as engine:
            result = engine.resolve("coconut milk")
        assert result.product_id == 1
        assert result.candidates[0].match_type == MATCH_BOTH
        # Exact generic + BOTH + distance ramp
        assert result.confidence > 0.7

    def test_semantic_outage_degrades_to_lexical(self, db_path, fake_embedder, failing_embedder, caplog):
        embed_products(db_path, embedder=fake_embedder)
        with caplog.at_level(logging.WARNING, logger="nwcart"):
            with ResolutionEngine(db_path, embedder=failing_embedder) as engine:
                result = engine.resolve("coconut milk")
        assert result.product_id == 1
        assert result.confidence == pytest.approx(0.55)
        assert "Semantic search unavailable" in caplog.text


class TestScoring:

    def _candidate(self, **overrides):
        values = dict(
            id=4,
            name="Pams Standard Milk 2L",
            generic_name="milk",
            in_stock=True,
            on_special=False,
            match_type=MATCH_FTS,
        )
        values.update(overrides)
        return ScoredCandidate(**values)

    def test_score_is_clamped_to_one(self, engine):
        engine.purchase_counts = MagicMock()
        engine.purchase_counts.get.return_value = 10
        candidate = self._candidate(match_type=MATCH_BOTH, on_special=True, vec_distance=0.0)
        assert engine.score_candidate(candidate, "milk") == 1.0

    def test_score_is_clamped_to_zero(self, engine):
        candidate = self._candidate(
            generic_name="yoghurt", in_stock=False, match_type=MATCH_VEC, vec_distance=2.0
        )
        assert engine.score_candidate(candidate, "milk") == 0.0

    def test_partial_generic_needs_relevant_name(self, engine):
        """'schnitzel' inside 'beef steaks & schnitzel' only counts if the product name mentions it."""
        relevant = self._candidate(name="Hellers Beef Schnitzel", generic_name="beef steaks & schnitzel")
        unrelated = self._candidate(name="Scotch Fillet Steak", generic_name="beef steaks & schnitzel")
        assert engine.score_candidate(relevant, "schnitzel") == pytest.approx(0.35)
        assert engine.score_candidate(unrelated, "schnitzel") == pytest.approx(0.15)

    def test_history_boost_needs_relevant_name(self, engine):
        engine.purchase_counts = MagicMock()
        engine.purchase_counts.get.return_value = 2
        relevant = self._candidate(generic_name=None)
        unrelated = self._candidate(name="Scotch Fillet Steak", generic_name=None)
        assert engine.score_candidate(relevant, "milk") == pytest.approx(0.15 + 0.18)
        assert engine.score_candidate(unrelated, "milk") == pytest.approx(0.15)

    def test_distance_ramp(self, engine):
        candidate = self._candidate(generic_name=None, match_type=MATCH_VEC, vec_distance=0.5)
        assert engine.score_candidate(candidate, "milk") == pytest.approx(0.1 + 0.15)

    def test_custom_weights(self, db_path):
        weights = ScoringWeights(auto_resolve_threshold=0.3)
        with ResolutionEngine(db_path, weights=weights) as engine:
            result = engine.resolve("cream")
        assert result.resolved
        assert result.product_id == 14

    def test_equal_scores_keep_merge_order(self, engine):
        a = self._candidate(id=1, generic_name=None)
        b = self._candidate(id=2, generic_name=None)
        assert [c.id for c in engine.score_candidates("milk", [a, b])] == [1, 2]
        assert [c.id for c in engine.score_candidates("milk", [b, a])] == [2, 1]


class TestBatches:

    def test_results_in_input_order(self, engine):
        items = ["coconut milk", {"generic_name": "milk"}, {"name": "xylophone"}, "eggs"]
        pairs = engine.resolve_batch(items)
        assert [item for item, _ in pairs] == items
        assert [r.product_id for _, r in pairs] == [1, 4, None, 12]

    def test_sequential_and_parallel_agree(self, engine):
        items = ["coconut milk", "milk", "bread", "cream", "chicken breast", "eggs"]
        sequential = [r for _, r in engine.resolve_batch(items, workers=1)]
        parallel = [r for _, r in engine.resolve_batch(items, workers=4)]
        assert sequential == parallel

    def test_each_batch_reloads_purchase_counts(self, engine, buy):
        engine.resolve_batch(["milk"])
        first_cache = engine.purchase_counts
        engine.resolve_batch(["milk"])
        assert engine.purchase_counts is not first_cache

    def test_new_purchases_visible_in_next_batch(self, engine, buy):
        # "chilled" is only a category word, so this reaches the scorer's history boost
        before = dict(engine.resolve_batch(["chilled milk"]))["chilled milk"]
        buy(3, times=2)
        after = dict(engine.resolve_batch(["chilled milk"]))["chilled milk"]

        assert before.source == after.source == "search"
        assert before.candidates[0].id == 4
        assert after.candidates[0].id == 3
        assert after.candidates[0].score == pytest.approx(0.15 + 0.18)

    def test_item_without_name(self, engine):
        with pytest.raises(ResolutionError):
            engine.resolve_batch([{"qty": 2}])

    def test_item_name(self):
        assert item_name("milk") == "milk"
        assert item_name({"genericName": "milk"}) == "milk"
        assert item_name({"name": "milk"}) == "milk"


class TestResultRecord:

    def test_resolved_to_dict(self, engine):
        data = engine.resolve("coconut milk").to_dict()
        assert data["resolved"] is True
        assert data["productId"] == 1
        assert data["productName"] == "Pams Coconut Milk"
        assert data["source"] == "search"
        assert data["candidates"][0]["matchType"] == "FTS"
        json.dumps(data)

    def test_unresolved_to_dict(self, engine):
        data = engine.resolve("xylophone").to_dict()
        assert data == {"resolved": False, "confidence": 0.0, "source": "none", "candidates": []}


class TestCheckoutTriage:

    @pytest.mark.parametrize(
        "result, auto, label",
        [
            (ResolutionResult(True, "preference", 0.9, product_id=1, strategy="fixed"), True, "Preference"),
            (ResolutionResult(True, "preference", 0.9, product_id=1, strategy="lowest_price"), False, "Lowest price"),
            (ResolutionResult(True, "preference", 0.9, product_id=1, strategy="on_special"), False, "On special"),
            (ResolutionResult(True, "purchase_history", 0.72, product_id=1), True, "Previously bought"),
            (ResolutionResult(True, "purchase_history", 0.64, product_id=1), False, "History match"),
            (ResolutionResult(True, "search", 0.75, product_id=1), True, "Best match"),
            (ResolutionResult(True, "search", 0.55, product_id=1), False, "Low confidence"),
            (ResolutionResult.unresolved("search"), False, "Low confidence"),
        ],
    )
    def test_triage(self, result, auto, label):
        triage = triage_resolution(result)
        assert triage["auto_confirmed"] is auto
        assert triage["label"] == label
        assert triage["selected_product_id"] == result.product_id

    def test_build_checkout_items(self, engine, prefs):
        prefs.set("bread", 8)
        items = build_checkout_items(engine, [{"name": "bread", "qty": 2}, {"name": "xylophone"}])
        assert items[0]["qty"] == 2
        assert items[0]["auto_confirmed"] is True
        assert items[0]["selected_product_id"] == 8
        assert items[1]["qty"] == 1
        assert items[1]["auto_confirmed"] is False
        assert items[1]["selected_product_id"] is None

    def test_preference_item_gets_swap_alternatives(self, engine, prefs):
        """An item settled by preference still offers other breads to swap to."""
        prefs.set("bread", 8)
        item = build_checkout_items(engine, [{"name": "bread"}])[0]

        assert item["resolution"].source == "preference"
        assert item["resolution"].candidates is None
        assert {c.id for c in item["candidates"]} >= {8, 9}

    def test_purchased_products_join_the_alternatives(self, engine, buy):
        """Bought products naming every word are offered once, after the search candidates."""
        buy(7, times=2)
        item = build_checkout_items(engine, [{"name": "chicken"}])[0]

        ids = [c.id for c in item["candidates"]]
        assert sorted(ids) == [6, 7]
        assert len(ids) == len(set(ids))

    def test_alternatives_are_not_repeated(self, engine, buy):
        buy(13, times=2)
        alternatives = checkout_alternatives(engine, "tuna")
        assert [c.id for c in alternatives] == [13]
