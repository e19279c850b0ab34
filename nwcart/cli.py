"""Command-line interface for the resolver."""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

__all__ = ["main", "parse_args", "build_engine", "show_stats"]

from nwcart.config import DB_PATH, DEFAULT_CONTEXT, EXPLICIT_CONFIDENCE
from nwcart.db import get_table_counts, init_db
from nwcart.embeddings import OpenAIEmbedder, embed_products
from nwcart.history import apply_suggestions, match_purchase_items, suggest_preferences, update_frequency
from nwcart.lists import build_list
from nwcart.logging_config import setup_logging
from nwcart.models import STRATEGIES, STRATEGY_FIXED, NwcartError
from nwcart.preferences import PreferenceStore
from nwcart.resolve import ResolutionEngine

logger = logging.getLogger(__name__)


def build_engine(db_path: str, semantic: bool = True) -> ResolutionEngine:
    """Resolution engine for the CLI; semantic search needs OPENAI_API_KEY."""
    embedder = None
    if semantic and os.getenv("OPENAI_API_KEY"):
        embedder = OpenAIEmbedder()
    elif semantic:
        logger.info("OPENAI_API_KEY not set, using lexical search only")
    return ResolutionEngine(db_path, embedder=embedder)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nwcart",
        description="Resolve grocery item names to New World products",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the database
  nwcart init

  # Resolve items for a recipe
  nwcart resolve "coconut milk" "red curry paste" --recipe-context "Thai green curry"

  # Always buy the cheapest of three milks
  nwcart pref-set milk 12 --strategy lowest_price --candidates 12 14 15

  # Review preferences learned from purchase history, then apply them
  nwcart learn
  nwcart learn --apply

  # Build a list from two recipes plus extras
  nwcart build-list --recipe "butter chicken" --recipe "naan" --item milk --item eggs
        """,
    )
    parser.add_argument(
        "--db",
        default=DB_PATH,
        help=f"SQLite database path (default: {DB_PATH})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging on the console",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Don't write the JSONL log file",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or upgrade the database schema")
    sub.add_parser("stats", help="Show database statistics")

    p = sub.add_parser("resolve", help="Resolve item names to products")
    p.add_argument("items", nargs="+", metavar="ITEM")
    p.add_argument("--context", default=DEFAULT_CONTEXT, help="Preference context (default: default)")
    p.add_argument("--recipe-context", help="Recipe name(s) to steer semantic search")
    p.add_argument("--json", action="store_true", help="Print results as JSON")
    p.add_argument("--no-semantic", action="store_true", help="Lexical search only")

    p = sub.add_parser("pref-set", help="Set a preferred product for an item")
    p.add_argument("name", metavar="NAME")
    p.add_argument("product_id", type=int, metavar="PRODUCT_ID")
    p.add_argument("--context", default=DEFAULT_CONTEXT)
    p.add_argument("--strategy", choices=STRATEGIES, default=STRATEGY_FIXED)
    p.add_argument("--confidence", type=float, default=EXPLICIT_CONFIDENCE)
    p.add_argument(
        "--candidates",
        nargs="+",
        type=int,
        metavar="ID",
        help="Candidate product ids for lowest_price/on_special",
    )

    p = sub.add_parser("pref-get", help="Show preferences (all, or for one item)")
    p.add_argument("name", nargs="?", metavar="NAME")
    p.add_argument("--json", action="store_true", help="Print as JSON")

    p = sub.add_parser("learn", help="Suggest preferences from purchase history")
    p.add_argument("--apply", action="store_true", help="Save the suggestions as preferences")

    sub.add_parser("frequency", help="Rebuild purchase frequency statistics")

    p = sub.add_parser("match-purchase", help="Link a purchase's items to catalog products")
    p.add_argument("purchase_id", type=int, metavar="PURCHASE_ID")
    p.add_argument("--no-semantic", action="store_true", help="Lexical search only")

    sub.add_parser("embed", help="Embed products that have no vector yet")

    p = sub.add_parser("build-list", help="Build a shopping list from recipes and items")
    p.add_argument("--recipe", action="append", default=[], metavar="NAME", help="Recipe name (repeatable)")
    p.add_argument("--item", action="append", default=[], metavar="ITEM", help="Extra item (repeatable)")
    p.add_argument("--name", help="List name")
    p.add_argument("--requested-by", help="Who asked for the list")
    p.add_argument("--json", action="store_true", help="Print as JSON")
    p.add_argument("--no-semantic", action="store_true", help="Lexical search only")

    return parser.parse_args(argv)


def show_stats(db_path: str) -> None:
    """Display database statistics."""
    init_db(db_path)

    print(f"\n{'='*50}")
    print(f"Database: {db_path}")
    print(f"{'='*50}\n")
    for table, count in get_table_counts(db_path).items():
        print(f"  {table}: {count}")
    print()


def _format_price(price: Optional[float]) -> str:
    return f"${price:.2f}" if price is not None else "-"


def cmd_resolve(args: argparse.Namespace) -> None:
    with build_engine(args.db, semantic=not args.no_semantic) as engine:
        pairs = engine.resolve_batch(args.items, recipe_context=args.recipe_context, context=args.context)

    if args.json:
        print(json.dumps([{"item": item, **result.to_dict()} for item, result in pairs], indent=2))
        return

    for item, result in pairs:
        if result.resolved:
            print(
                f"  {item}: {result.product_name} ({_format_price(result.price)})"
                f" [{result.source}, {result.confidence:.2f}]"
            )
        else:
            print(f"  {item}: unresolved [{result.source}]")
            for c in result.candidates or []:
                print(f"      #{c.id} {c.name} ({_format_price(c.price)}) score={c.score:.2f} {c.match_type}")


def cmd_pref_set(args: argparse.Namespace) -> None:
    store = PreferenceStore(args.db)
    pref = store.set(
        args.name,
        args.product_id,
        context=args.context,
        confidence=args.confidence,
        strategy=args.strategy,
        candidate_ids=args.candidates,
    )
    print(f"{pref.generic_name} [{pref.context}] -> {pref.product_name} ({pref.strategy})")


def cmd_pref_get(args: argparse.Namespace) -> None:
    store = PreferenceStore(args.db)
    if args.name:
        prefs = store.get_all(args.name)
        rows = [r for r in store.to_rows() if r["generic_name"].lower() == args.name.strip().lower()]
    else:
        prefs = store.list_all()
        rows = store.to_rows()

    if args.json:
        print(json.dumps(rows, indent=2))
        return

    if not prefs:
        print("No preferences found")
        return
    for p in prefs:
        print(
            f"  {p.generic_name} [{p.context}] -> #{p.product_id} {p.product_name}"
            f" ({_format_price(p.price)}) {p.strategy}, {p.source}, {p.confidence:.2f}"
        )


def cmd_learn(args: argparse.Namespace) -> None:
    suggestions = suggest_preferences(args.db)
    if not suggestions:
        print("No new preferences to suggest")
        return

    print(f"{len(suggestions)} suggestion(s):")
    for s in suggestions:
        print(
            f"  {s['generic_name']} -> {s['product_name']}"
            f" ({s['buy_count']}/{s['total_buys']} buys, {s['share']}%)"
        )

    if args.apply:
        applied = apply_suggestions(PreferenceStore(args.db), suggestions)
        print(f"Applied {applied} preference(s)")
    else:
        print("\nRun with --apply to save these")


def cmd_match_purchase(args: argparse.Namespace) -> None:
    with build_engine(args.db, semantic=not args.no_semantic) as engine:
        summary = match_purchase_items(args.db, args.purchase_id, engine.searcher)

    for r in summary["results"]:
        if r["status"] == "no_match":
            print(f"  ?? {r['item']}: no match")
        elif r["status"] == "low_confidence":
            print(f"  ~  {r['item']} -> {r['matched_to']} ({r['confidence']:.2f})")
        else:
            print(f"  ok {r['item']} -> {r['matched_to']}")
    print(f"\nMatched {summary['matched']}/{summary['total']}, {summary['flagged']} flagged for review")


def cmd_build_list(args: argparse.Namespace) -> None:
    if not args.recipe and not args.item:
        raise NwcartError("build-list needs at least one --recipe or --item")

    with build_engine(args.db, semantic=not args.no_semantic) as engine:
        result = build_list(
            engine,
            recipe_names=args.recipe,
            manual_items=args.item,
            name=args.name,
            requested_by=args.requested_by,
        )

    if args.json:
        result = dict(result, items=[dict(i, candidates=[c.to_dict() for c in i["candidates"]]) for i in result["items"]])
        print(json.dumps(result, indent=2))
        return

    print(f"List #{result['list_id']}: {result['name']}")
    for item in result["items"]:
        mark = " " if item["resolved"] else "?"
        qty = f" x {item['quantity']}" if item["quantity"] else ""
        print(f"  {mark} {item['display_name']}{qty} ({_format_price(item['estimated_price'])})")
    print(f"\nEstimated total: {_format_price(result['estimated_total'])}, {result['unresolved_count']} unresolved")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        log_to_file=not args.no_log_file,
    )

    try:
        if args.command == "init":
            init_db(args.db)
            print(f"Database ready: {args.db}")
            return 0

        if args.command == "stats":
            show_stats(args.db)
            return 0

        # Every other command needs the schema in place
        init_db(args.db)

        if args.command == "resolve":
            cmd_resolve(args)
        elif args.command == "pref-set":
            cmd_pref_set(args)
        elif args.command == "pref-get":
            cmd_pref_get(args)
        elif args.command == "learn":
            cmd_learn(args)
        elif args.command == "frequency":
            count = update_frequency(args.db)
            print(f"Updated purchase frequency for {count} item(s)")
        elif args.command == "match-purchase":
            cmd_match_purchase(args)
        elif args.command == "embed":
            count = embed_products(args.db)
            print(f"Embedded {count} product(s)")
        elif args.command == "build-list":
            cmd_build_list(args)
    except NwcartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
