import argparse
import asyncio
import sys
from typing import List

from loguru import logger

from grubstars.adapters import default_adapters
from grubstars.config import DB_PATH, DEFAULT_INDEX_LIMIT, LOG_LEVEL
from grubstars.errors import GrubStarsError, IndexingError, RestaurantNotFoundError
from grubstars.indexer import Indexer
from grubstars.merge_duplicates import DuplicateMerger
from grubstars.models import IndexStats, Restaurant
from grubstars.ranking import SortOrder
from grubstars.search import SearchService
from grubstars.stats import StatsService
from grubstars.store.catalog import CatalogStore
from grubstars.store.database import connect
from grubstars.store.quota import SqliteQuotaLedger


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="grub-stars", description="Restaurant ratings aggregated from several directories.")
    parser.add_argument("--db", default=DB_PATH, help="Path to the SQLite catalog")
    commands = parser.add_subparsers(dest="command", required=True)

    index = commands.add_parser("index", help="Index restaurants for a location")
    index.add_argument("location", help='e.g. "barrie, ontario"')
    index.add_argument("--categories", help='Category filter, e.g. "bakery"')
    index.add_argument("--limit", type=positive_int, default=DEFAULT_INDEX_LIMIT, help="Maximum records per adapter")

    search = commands.add_parser("search", help="Search restaurants by name")
    search.add_argument("query")
    search.add_argument("--location")
    search.add_argument("--sort", default=SortOrder.RELEVANCE.value, choices=[s.value for s in SortOrder])

    category = commands.add_parser("category", help="Search restaurants by category")
    category.add_argument("category")
    category.add_argument("--location")
    category.add_argument("--sort", default=SortOrder.RELEVANCE.value, choices=[s.value for s in SortOrder])

    merge = commands.add_parser("merge-duplicates", help="Merge restaurants only a GPS-weak source knows about")
    merge.add_argument("--execute", action="store_true", help="Apply merges (default is a dry run)")

    reindex = commands.add_parser("reindex", help="Refresh one restaurant from its sources")
    reindex.add_argument("restaurant_id", type=int)

    info = commands.add_parser("info", help="Show everything known about one restaurant")
    info.add_argument("restaurant_id", type=int)

    commands.add_parser("categories", help="List every known category")

    commands.add_parser("stats", help="Catalog and API usage statistics")
    return parser


def print_results(results: List[Restaurant]) -> None:
    if not results:
        print("No restaurants found.")
        return
    for restaurant in results:
        rating = restaurant.average_rating
        rating_text = f"{rating:.1f}★ ({restaurant.total_reviews} reviews)" if rating is not None else "unrated"
        print(f"[{restaurant.id}] {restaurant.name} | {restaurant.address or '-'} | {rating_text} | {', '.join(restaurant.sources)}")


def print_index_stats(stats: IndexStats) -> None:
    print(f"Indexed {stats.total} restaurants: {stats.created} new, {stats.merged} merged, {stats.updated} updated")
    for name, message in stats.failures.items():
        print(f"  {name}: {message}")
    if stats.limit_reached:
        print(f"Limit of {stats.limit} per adapter reached.")


def print_restaurant_details(restaurant: Restaurant) -> None:
    print(f"[{restaurant.id}] {restaurant.name}")
    print(f"  Address:    {restaurant.address or '-'}")
    print(f"  Phone:      {restaurant.phone or '-'}")
    print(f"  Location:   {restaurant.location or '-'}")
    print(f"  Sources:    {', '.join(restaurant.sources) or '-'}")
    for rating in restaurant.ratings:
        score = f"{rating.score:.1f}★" if rating.score is not None else "unrated"
        print(f"  {rating.source}: {score} ({rating.review_count or 0} reviews)")
    if restaurant.average_rating is not None:
        print(f"  Average:    {restaurant.average_rating:.1f}★ ({restaurant.total_reviews} reviews)")
    print(f"  Categories: {', '.join(restaurant.category_names) or '-'}")
    print(f"  Photos:     {len(restaurant.photos)}")


async def run(args: argparse.Namespace) -> int:
    conn = connect(args.db)
    store = CatalogStore(conn)
    ledger = SqliteQuotaLedger(conn)
    adapters = default_adapters(quota_ledger=ledger)

    try:
        if args.command == "index":
            indexer = Indexer(store, adapters)
            try:
                stats = await indexer.index(args.location, categories=args.categories, limit=args.limit)
            except IndexingError as e:
                print_index_stats(e.stats)
                raise
            print_index_stats(stats)

        elif args.command == "search":
            print_results(SearchService(store).search_by_name(args.query, location=args.location, sort=args.sort))

        elif args.command == "category":
            print_results(SearchService(store).search_by_category(args.category, location=args.location, sort=args.sort))

        elif args.command == "merge-duplicates":
            result = DuplicateMerger(store).merge_duplicates(dry_run=not args.execute)
            for detail in result.details:
                target = f" -> [{detail.target_id}] {detail.target_name} ({detail.similarity:.2f})" if detail.target_id else ""
                print(f"[{detail.duplicate_id}] {detail.duplicate_name}{target}: {detail.reason}")
            print(f"Merged: {result.merged_count}, skipped: {result.skipped_count}")

        elif args.command == "reindex":
            result = await Indexer(store, adapters).reindex_restaurant(args.restaurant_id)
            print(result.message)
            for source, error in result.sources_failed:
                print(f"  {source}: {error}")

        elif args.command == "info":
            restaurant = store.find_by_id_with_associations(args.restaurant_id)
            if restaurant is None:
                raise RestaurantNotFoundError(f"Restaurant with ID {args.restaurant_id} not found")
            print_restaurant_details(restaurant)

        elif args.command == "categories":
            names = store.all_category_names()
            print("\n".join(names) if names else "No categories indexed.")

        elif args.command == "stats":
            stats = StatsService(store, adapters, ledger).get_stats()
            for key, value in stats["restaurants"].items():
                print(f"{key}: {value}")
            for source, count in stats["provider_coverage"].items():
                print(f"{source}: {count} restaurants")
            for usage in stats["api_usage"]:
                limit = usage["request_limit"] if usage["request_limit"] is not None else "unlimited"
                print(f"{usage['name']}: {usage['request_count']}/{limit} requests, resets in {usage['days_until_reset']} days")
            print(f"locations: {', '.join(stats['locations'])}")
        return 0
    finally:
        # Close adapter sessions to prevent unclosed connector warnings
        for adapter in adapters:
            await adapter.close()
        conn.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logger.remove()  # Remove default handler
    logger.add(sys.stderr, level=LOG_LEVEL, format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>")

    try:
        return asyncio.run(run(args))
    except GrubStarsError as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
