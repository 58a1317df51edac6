import logging
import math
import time
from typing import List, Optional

from .feeds import ProxyBackend, fetch_futures_ticker, fetch_spot_ticker
from .models import InstitutionalOrder, InstitutionalSignalsSnapshot, Ticker

logger = logging.getLogger(__name__)


def detect_institutional_signals(ticker: Ticker) -> List[InstitutionalOrder]:
    """Accumulation, momentum and range-extreme rejection signals for one ticker."""
    price, open_price = ticker.last_price, ticker.open_price
    high, low = ticker.high_price, ticker.low_price
    pct = ticker.price_change_percent
    values = (price, open_price, high, low, ticker.quote_volume, pct)
    if not all(math.isfinite(v) for v in values):
        logger.warning(f'Invalid input for institutional detection on {ticker.symbol}')
        return []

    volume_delta = ticker.quote_volume / 1e9
    signals = []
    if volume_delta > 8 and abs(pct) < 2:
        signals.append(InstitutionalOrder(
            direction='up' if price > open_price else 'down',
            confidence=min(volume_delta / 12, 0.95),
            price=(open_price + price) / 2,
        ))
    if abs(pct) > 5 and volume_delta > 6:
        signals.append(InstitutionalOrder(
            direction='up' if pct > 0 else 'down',
            confidence=min((abs(pct) + volume_delta) / 18, 0.9),
            price=(low + high) / 2,
        ))

    price_range = high - low
    if price_range > 0 and volume_delta > 7:
        position = (price - low) / price_range
        if position < 0.2:
            signals.append(InstitutionalOrder('up', min(volume_delta / 10, 0.85), low))
        elif position > 0.8:
            signals.append(InstitutionalOrder('down', min(volume_delta / 10, 0.85), high))
    return signals


def futures_institutional_orders(symbol: str = 'BTCUSDT') -> InstitutionalSignalsSnapshot:
    ticker = fetch_futures_ticker(symbol)
    return InstitutionalSignalsSnapshot(
        symbol=symbol,
        signals=detect_institutional_signals(ticker),
        last_updated=int(time.time() * 1000),
    )


def spot_institutional_orders(symbol: str = 'BTCUSDT', backend: Optional[ProxyBackend] = None) -> InstitutionalSignalsSnapshot:
    ticker, used_fallback = fetch_spot_ticker(symbol, backend=backend)
    if used_fallback:
        logger.info(f'Spot data for {symbol} served by backend fallback')
    return InstitutionalSignalsSnapshot(
        symbol=symbol,
        signals=detect_institutional_signals(ticker),
        last_updated=int(time.time() * 1000),
        used_backend_fallback=used_fallback,
    )
