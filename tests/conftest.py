import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from market_radar.calibration import LearningEngine
from market_radar.models import Ticker
from market_radar.store import MemoryStore


def make_ticker(symbol='BTCUSDT', last=100.0, open_price=None, high=None, low=None,
                quote_volume=1e9, pct=None, count=50000):
    """Ticker with sensible defaults: flat open, 1% range each side."""
    open_price = last if open_price is None else open_price
    high = max(last, open_price) * 1.01 if high is None else high
    low = min(last, open_price) * 0.99 if low is None else low
    if pct is None:
        pct = (last - open_price) / open_price * 100 if open_price else 0.0
    return Ticker(
        symbol=symbol,
        last_price=last,
        open_price=open_price,
        high_price=high,
        low_price=low,
        quote_volume=quote_volume,
        price_change_percent=pct,
        count=count,
    )


BTC_PAYLOAD = {
    'symbol': 'BTCUSDT',
    'lastPrice': '50000',
    'openPrice': '49000',
    'highPrice': '51000',
    'lowPrice': '48500',
    'quoteVolume': '9000000000',
    'priceChangePercent': '2.04',
    'count': 120000,
}


@pytest.fixture
def btc_payload():
    return dict(BTC_PAYLOAD)


@pytest.fixture
def engine():
    e = LearningEngine(MemoryStore())
    e.initialize()
    return e


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.reason = 'OK' if status_code == 200 else 'Error'
        self.text = text if text is not None else str(payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload
