"""
GridFeed — energy market data polling with TTL caching and simulated fallback.
"""

from gridfeed.models import ConnectionStatus, DataResponse, DataSource, DataType
from gridfeed.poller import MarketDataPoller, PollHandle

__all__ = [
    "ConnectionStatus",
    "DataResponse",
    "DataSource",
    "DataType",
    "MarketDataPoller",
    "PollHandle",
]
