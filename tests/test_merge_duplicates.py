import sqlite3
from unittest.mock import patch

import pytest

from grubstars.merge_duplicates import DuplicateMerger
from grubstars.models import Restaurant


def add_restaurant(store, source, external_id, name, **fields):
    restaurant = store.create(Restaurant(name=name, **fields))
    store.save_external_id(restaurant.id, source, f"{source}:{external_id}")
    return restaurant


@pytest.fixture
def joes(store):
    """A TripAdvisor-only Joe's Pizza next to a Yelp-backed one."""
    duplicate = add_restaurant(store, "tripadvisor", "ta1", "Joe's Pizza", latitude=43.00000, longitude=-79.00000, phone="705-555-0100")
    target = add_restaurant(store, "yelp", "y1", "Joe's Pizza", latitude=43.00010, longitude=-79.00010)
    return duplicate, target


def test_dry_run_reports_without_changing_anything(store, joes):
    duplicate, target = joes

    result = DuplicateMerger(store).merge_duplicates(dry_run=True)

    assert result.merged_count == 1
    assert result.skipped_count == 0
    [detail] = result.details
    assert (detail.duplicate_id, detail.target_id) == (duplicate.id, target.id)
    assert detail.similarity == 1.0
    assert detail.merged is False
    assert detail.reason == "Dry run - would merge"
    assert store.count() == 2


def test_execute_leaves_one_restaurant_with_both_sources(store, joes):
    duplicate, target = joes

    result = DuplicateMerger(store).merge_duplicates(dry_run=False)

    assert result.merged_count == 1
    assert result.details[0].merged is True
    assert result.details[0].reason == "Merged successfully"
    assert store.count() == 1
    assert store.find_by_id(duplicate.id) is None
    assert sorted(e.source for e in store.external_ids_for(target.id)) == ["tripadvisor", "yelp"]
    # Null phone on the target is backfilled from the duplicate
    assert store.find_by_id(target.id).phone == "705-555-0100"


def test_execute_moves_associations_without_duplicates(store, joes):
    duplicate, target = joes
    store.upsert_rating(duplicate.id, "tripadvisor", 4.5, 200)
    store.upsert_rating(duplicate.id, "yelp", 3.0, 1)
    store.upsert_rating(target.id, "yelp", 4.0, 50)
    store.add_review(duplicate.id, "tripadvisor", snippet="Great", url="https://example.com/r/1")
    store.add_review(target.id, "yelp", snippet="Great", url="https://example.com/r/1")
    store.add_review(duplicate.id, "tripadvisor", snippet="Cheap", url="https://example.com/r/2")
    store.replace_media(duplicate.id, "tripadvisor", "photo", ["shared.jpg", "ta.jpg"])
    store.replace_media(target.id, "yelp", "photo", ["shared.jpg"])
    store.link_categories(duplicate.id, ["pizza", "italian"])
    store.link_categories(target.id, ["pizza"])

    DuplicateMerger(store).merge_duplicates(dry_run=False)

    merged = store.find_by_id_with_associations(target.id)
    assert {r.source: r.score for r in merged.ratings} == {"yelp": 4.0, "tripadvisor": 4.5}
    assert sorted(r.url for r in merged.reviews) == ["https://example.com/r/1", "https://example.com/r/2"]
    assert sorted(m.url for m in merged.media) == ["shared.jpg", "ta.jpg"]
    assert merged.category_names == ["italian", "pizza"]


def test_no_match_is_skipped(store):
    add_restaurant(store, "tripadvisor", "ta1", "Sushi Palace", latitude=43.0, longitude=-79.0)
    add_restaurant(store, "yelp", "y1", "Joe's Pizza", latitude=43.0, longitude=-79.0)

    result = DuplicateMerger(store).merge_duplicates(dry_run=False)

    assert result.merged_count == 0
    assert result.skipped_count == 1
    assert result.details[0].reason == "No matching restaurant found"
    assert store.count() == 2


def test_candidate_outside_gps_box_is_ignored(store):
    add_restaurant(store, "tripadvisor", "ta1", "Joe's Pizza", latitude=43.0, longitude=-79.0)
    add_restaurant(store, "google", "g1", "Joe's Pizza", latitude=43.01, longitude=-79.0)

    result = DuplicateMerger(store).merge_duplicates(dry_run=False)

    assert result.skipped_count == 1
    assert store.count() == 2


def test_duplicate_without_coordinates_matches_on_name(store):
    duplicate = add_restaurant(store, "tripadvisor", "ta1", "Joes Pizza")
    target = add_restaurant(store, "google", "g1", "Joe's Pizza", latitude=43.01, longitude=-79.0)

    result = DuplicateMerger(store).merge_duplicates(dry_run=False)

    assert result.merged_count == 1
    assert store.find_by_id(duplicate.id) is None
    assert store.find_by_id(target.id).latitude == 43.01


def test_best_candidate_wins(store):
    add_restaurant(store, "tripadvisor", "ta1", "Joe's Pizza")
    add_restaurant(store, "yelp", "y1", "Joe's Pizzas")
    exact = add_restaurant(store, "google", "g1", "Joe's Pizza")

    result = DuplicateMerger(store).merge_duplicates(dry_run=True)

    assert result.details[0].target_id == exact.id


def test_restaurant_with_reliable_source_is_not_a_duplicate(store):
    both = add_restaurant(store, "tripadvisor", "ta1", "Joe's Pizza")
    store.save_external_id(both.id, "yelp", "yelp:y1")
    add_restaurant(store, "google", "g1", "Joe's Pizza")

    merger = DuplicateMerger(store)

    assert merger.find_weak_source_only_restaurants() == []
    assert merger.sources_for(both.id) == ["tripadvisor", "yelp"]


def test_sweep_is_idempotent(store, joes):
    merger = DuplicateMerger(store)
    merger.merge_duplicates(dry_run=False)

    second = merger.merge_duplicates(dry_run=False)

    assert second.merged_count == 0
    assert second.details == []


def test_failed_merge_rolls_back_and_is_skipped(store, joes):
    duplicate, target = joes
    store.upsert_rating(duplicate.id, "tripadvisor", 4.5, 200)

    with patch.object(DuplicateMerger, "_move_media", side_effect=sqlite3.OperationalError("database is locked")):
        result = DuplicateMerger(store).merge_duplicates(dry_run=False)

    assert result.merged_count == 0
    assert result.skipped_count == 1
    assert result.details[0].reason == "Merge failed"
    assert result.details[0].merged is False
    assert store.count() == 2
    assert [e.source for e in store.external_ids_for(duplicate.id)] == ["tripadvisor"]
    assert [r.source for r in store.ratings_for(duplicate.id)] == ["tripadvisor"]
    assert store.find_by_id(target.id).phone is None
