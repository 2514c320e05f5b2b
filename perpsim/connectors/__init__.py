"""Market data and advisory connectors."""

from perpsim.connectors.advisory import AdvisoryClient, AdvisoryError
from perpsim.connectors.feed import MarketContext, MarketFeed, parse_price_message
from perpsim.connectors.rest_client import MarketDataClient, parse_klines, process_order_book
from perpsim.connectors.ws_client import BinanceWebSocketClient, market_streams

__all__ = [
    "AdvisoryClient",
    "AdvisoryError",
    "BinanceWebSocketClient",
    "MarketContext",
    "MarketDataClient",
    "MarketFeed",
    "market_streams",
    "parse_klines",
    "parse_price_message",
    "process_order_book",
]
