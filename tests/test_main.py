import pytest

from grubstars.models import Restaurant
from grubstars.store.catalog import CatalogStore
from grubstars.store.database import connect
from main import build_parser, main


def test_parser_defaults_to_dry_run():
    args = build_parser().parse_args(["merge-duplicates"])
    assert args.execute is False

    args = build_parser().parse_args(["index", "barrie, ontario", "--limit", "25"])
    assert (args.location, args.limit, args.categories) == ("barrie, ontario", 25, None)


def test_search_command(tmp_path, capsys):
    db_path = tmp_path / "catalog.db"
    conn = connect(db_path)
    CatalogStore(conn).create(Restaurant(name="Tim Hortons", location="barrie, ontario"))
    conn.close()

    assert main(["--db", str(db_path), "search", "tim hortons"]) == 0
    assert "Tim Hortons" in capsys.readouterr().out


def test_unindexed_location_exits_with_error(tmp_path):
    assert main(["--db", str(tmp_path / "catalog.db"), "search", "tim", "--location", "ottawa"]) == 1


def test_limit_must_be_positive(capsys):
    with pytest.raises(SystemExit):
        build_parser().parse_args(["index", "barrie, ontario", "--limit", "0"])
    assert "must be at least 1" in capsys.readouterr().err


def test_info_command(tmp_path, capsys):
    db_path = tmp_path / "catalog.db"
    conn = connect(db_path)
    store = CatalogStore(conn)
    restaurant = store.create(Restaurant(name="Joe's Pizza", address="123 Main St", location="barrie, ontario"))
    store.save_external_id(restaurant.id, "yelp", "yelp:1")
    store.upsert_rating(restaurant.id, "yelp", 4.5, 12)
    store.link_categories(restaurant.id, ["pizza"])
    store.replace_media(restaurant.id, "yelp", "photo", ["a.jpg", "b.jpg"])
    conn.close()

    assert main(["--db", str(db_path), "info", str(restaurant.id)]) == 0
    out = capsys.readouterr().out
    assert f"[{restaurant.id}] Joe's Pizza" in out
    assert "123 Main St" in out
    assert "yelp: 4.5★ (12 reviews)" in out
    assert "Categories: pizza" in out
    assert "Photos:     2" in out


def test_info_unknown_restaurant_exits_with_error(tmp_path):
    assert main(["--db", str(tmp_path / "catalog.db"), "info", "42"]) == 1


def test_categories_command(tmp_path, capsys):
    db_path = tmp_path / "catalog.db"
    conn = connect(db_path)
    store = CatalogStore(conn)
    restaurant = store.create(Restaurant(name="Joe's Pizza"))
    store.link_categories(restaurant.id, ["pizza", "italian"])
    conn.close()

    assert main(["--db", str(db_path), "categories"]) == 0
    assert capsys.readouterr().out.splitlines() == ["italian", "pizza"]
