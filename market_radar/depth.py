import logging
import math
import time
from typing import List, Optional, Tuple

from .errors import MarketDataError
from .feeds import ProxyBackend, fetch_depth, fetch_spot_depth
from .models import DepthLevel, DepthMetrics, OrderBookSnapshot

logger = logging.getLogger(__name__)

WALL_MULTIPLIER = 2.5
IMBALANCE_LEVELS = 10


def _parse_side(raw) -> List[DepthLevel]:
    levels = []
    total = 0.0
    for entry in raw:
        try:
            price, size = float(entry[0]), float(entry[1])
        except (TypeError, ValueError, IndexError):
            continue
        if not (math.isfinite(price) and math.isfinite(size)) or price <= 0 or size <= 0:
            continue
        total += size
        levels.append(DepthLevel(price=price, size=size, total=total))
    return levels


def parse_depth(raw) -> Tuple[List[DepthLevel], List[DepthLevel], bool]:
    """Typed (bids, asks, is_empty) from a raw depth payload; bad levels are dropped."""
    if not isinstance(raw, dict):
        return [], [], True
    raw_bids, raw_asks = raw.get('bids') or [], raw.get('asks') or []
    if not isinstance(raw_bids, list) or not isinstance(raw_asks, list):
        return [], [], True
    bids, asks = _parse_side(raw_bids), _parse_side(raw_asks)
    return bids, asks, not bids and not asks


def aggregate_depth(levels: List[DepthLevel], step: float, side: str) -> List[DepthLevel]:
    """Bucket levels into `step`-wide prices and flag walls (>= 2.5x the median size).

    Bids round down and sort descending; asks round up and sort ascending.
    """
    if not levels:
        return []
    buckets = {}
    for level in levels:
        if side == 'bid':
            bucket = math.floor(level.price / step) * step
        else:
            bucket = math.ceil(level.price / step) * step
        buckets[bucket] = buckets.get(bucket, 0.0) + level.size

    aggregated = []
    total = 0.0
    for price in sorted(buckets, reverse=(side == 'bid')):
        total += buckets[price]
        aggregated.append(DepthLevel(price=price, size=buckets[price], total=total))

    sizes = sorted(level.size for level in aggregated)
    wall_threshold = sizes[len(sizes) // 2] * WALL_MULTIPLIER
    for level in aggregated:
        level.is_wall = level.size >= wall_threshold
    return aggregated


def compute_metrics(bids: List[DepthLevel], asks: List[DepthLevel]) -> Optional[DepthMetrics]:
    if not bids or not asks:
        return None
    best_bid, best_ask = bids[0].price, asks[0].price
    if best_bid <= 0 or best_ask <= 0:
        return None

    top = min(IMBALANCE_LEVELS, len(bids), len(asks))
    bid_volume = sum(level.size for level in bids[:top])
    ask_volume = sum(level.size for level in asks[:top])
    total = bid_volume + ask_volume
    return DepthMetrics(
        mid_price=(best_bid + best_ask) / 2,
        spread=best_ask - best_bid,
        imbalance=(bid_volume - ask_volume) / total if total > 0 else 0.0,
    )


def build_snapshot(symbol: str, raw, step: Optional[float] = None, used_backend_fallback: bool = False) -> OrderBookSnapshot:
    bids, asks, is_empty = parse_depth(raw)
    if step:
        bids = aggregate_depth(bids, step, 'bid')
        asks = aggregate_depth(asks, step, 'ask')
    return OrderBookSnapshot(
        symbol=symbol,
        bids=bids,
        asks=asks,
        metrics=compute_metrics(bids, asks),
        is_empty=is_empty,
        last_updated=int(time.time() * 1000),
        used_backend_fallback=used_backend_fallback,
    )


def fetch_order_book(symbol: str = 'BTCUSDT', venue: str = 'futures', step: Optional[float] = None,
                     limit: int = 100, backend: Optional[ProxyBackend] = None) -> OrderBookSnapshot:
    """Depth snapshot for one venue; spot falls back to the backend proxy."""
    try:
        if venue == 'futures':
            raw, used_fallback = fetch_depth(symbol, limit, venue='futures'), False
        else:
            raw, used_fallback = fetch_spot_depth(symbol, limit, backend=backend)
    except MarketDataError as e:
        logger.error(f'Order book fetch failed for {symbol} ({venue}): {e}')
        raise
    return build_snapshot(symbol, raw, step, used_fallback)
