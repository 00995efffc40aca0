from .base import OddsFeed, OrderExecutionClient
from .kalshi import KalshiOrderClient
from .paper import PaperOrderClient

__all__ = ["KalshiOrderClient", "OddsFeed", "OrderExecutionClient", "PaperOrderClient"]
