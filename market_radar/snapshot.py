"""Backend unified snapshot: the fallback futures feed relayed by the proxy."""

import time
from typing import Any, List, Mapping, Optional

from .errors import InterfaceMismatch
from .models import Ticker, to_float

STALE_AFTER_MS = 120000

RELOAD_HINT = 'Please reload to clear any stale cached client.'


def _mismatch(detail: str) -> InterfaceMismatch:
    return InterfaceMismatch(f'Frontend-backend interface mismatch: {detail}. {RELOAD_HINT}')


def transform_unified_snapshot(snapshot: Mapping[str, Any]) -> List[Ticker]:
    """Convert `{marketData: [{symbol, price, volume, direction}], timestamp}` into tickers.

    The snapshot timestamp is in nanoseconds. Entries without a symbol or
    numeric price/volume are skipped; price change fields are zero.
    """
    if not isinstance(snapshot, Mapping):
        raise _mismatch('snapshot is not an object')
    items = snapshot.get('marketData')
    if not isinstance(items, list):
        raise _mismatch('marketData is not an array')
    timestamp = snapshot.get('timestamp')
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise _mismatch('timestamp is missing or invalid')

    timestamp_ms = int(timestamp // 1_000_000)
    tickers = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        symbol = item.get('symbol')
        if not isinstance(symbol, str) or not symbol:
            continue
        if not isinstance(item.get('price'), (int, float)) or not isinstance(item.get('volume'), (int, float)):
            continue
        price = to_float(item['price'])
        volume = to_float(item['volume'])
        tickers.append(Ticker(
            symbol=symbol,
            last_price=price,
            open_price=price,
            high_price=price,
            low_price=price,
            quote_volume=volume * price,
            price_change_percent=0.0,
            weighted_avg_price=price,
            volume=volume,
            open_time=timestamp_ms,
            close_time=timestamp_ms,
        ))
    return tickers


def is_snapshot_stale(timestamp_ns: int, max_age_ms: int = STALE_AFTER_MS, now_ms: Optional[int] = None) -> bool:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return now_ms - timestamp_ns // 1_000_000 > max_age_ms
