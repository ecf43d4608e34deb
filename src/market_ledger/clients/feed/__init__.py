"""Market-data feed client used for content ingestion."""

from market_ledger.clients.feed.client import FeedClient
from market_ledger.clients.feed.exceptions import FeedAPIError, FeedError
from market_ledger.clients.feed.models import FeedMarket

__all__ = [
    "FeedAPIError",
    "FeedClient",
    "FeedError",
    "FeedMarket",
]
