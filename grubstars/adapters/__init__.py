"""Business-directory adapters."""
from grubstars.adapters.base import BaseAdapter
from grubstars.adapters.google import GoogleAdapter
from grubstars.adapters.tripadvisor import TripAdvisorAdapter
from grubstars.adapters.yelp import YelpAdapter

__all__ = ["BaseAdapter", "GoogleAdapter", "TripAdvisorAdapter", "YelpAdapter", "default_adapters"]


def default_adapters(**kwargs):
    """One instance of every directory adapter, sharing the given options (e.g. quota_ledger)."""
    return [YelpAdapter(**kwargs), GoogleAdapter(**kwargs), TripAdvisorAdapter(**kwargs)]
