"""Error types raised by the market data layer."""

from typing import Optional


class MarketDataError(RuntimeError):
    """Base class for failures fetching or decoding market data."""


class DataFeedUnavailable(MarketDataError):
    """Raised when upstream market data cannot be reached (network/proxy issues)."""


class DataFeedBlocked(MarketDataError):
    """Raised when the venue answers with a structured error (geo/IP restriction)."""


class InvalidPayload(MarketDataError, ValueError):
    """Raised when an upstream payload is missing fields or has the wrong shape."""


class UpstreamHTTPError(MarketDataError):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class AssetNotFound(MarketDataError):
    def __init__(self, symbol: str, message: Optional[str] = None):
        super().__init__(message or f'Asset not found: {symbol}')
        self.symbol = symbol


class InterfaceMismatch(MarketDataError):
    """Backend returned a payload whose shape no longer matches this client."""
