import time
from functools import cmp_to_key
from typing import Iterable, List, Mapping, Optional

from .models import FundingRateData, MarketData, OpenInterestData, RadarAlert, Recommendation, as_market_data
from .radar import RadarFilters, RadarState, apply_filters, detect_anomalies
from .sensitivity import RadarSensitivityPolicy

MAX_RECOMMENDATIONS = 15


def _compare_candidates(a: MarketData, b: MarketData) -> int:
    la = a.analysis.learning_level or 0.0
    lb = b.analysis.learning_level or 0.0
    if abs(la - lb) > 0.1:
        return -1 if la > lb else 1
    if abs(a.analysis.confidence - b.analysis.confidence) > 0.1:
        return -1 if a.analysis.confidence > b.analysis.confidence else 1
    if a.analysis.strength != b.analysis.strength:
        return -1 if a.analysis.strength > b.analysis.strength else 1
    return (a.symbol > b.symbol) - (a.symbol < b.symbol)


def generate_recommendations(market: Iterable, now_ms: Optional[int] = None) -> List[Recommendation]:
    """Top bullish candidates, preferring assets the engine has learned most about."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    candidates = [
        md for md in (as_market_data(m) for m in market)
        if md.analysis is not None
        and md.analysis.trend == 'bullish'
        and md.analysis.strength > 50
        and md.analysis.confidence > 0.4
    ]
    candidates.sort(key=cmp_to_key(_compare_candidates))
    return [
        Recommendation(
            symbol=md.symbol,
            strength=md.analysis.strength,
            confidence=md.analysis.confidence,
            timestamp=now_ms,
        )
        for md in candidates[:MAX_RECOMMENDATIONS]
    ]


def generate_radar_alerts(market: Iterable, policy: RadarSensitivityPolicy, state: RadarState,
                          funding: Optional[Mapping[str, FundingRateData]] = None,
                          open_interest: Optional[Mapping[str, OpenInterestData]] = None,
                          filters: Optional[RadarFilters] = None,
                          now_ms: Optional[int] = None) -> List[RadarAlert]:
    alerts = detect_anomalies(market, policy, state, funding, open_interest, now_ms=now_ms)
    return apply_filters(alerts, filters)


class AlertTracker:
    """Remembers which symbol/minute pairs were already surfaced."""

    def __init__(self, max_keys: int = 100, keep_keys: int = 50):
        self.max_keys = max_keys
        self.keep_keys = keep_keys
        self._keys: List[str] = []
        self._seen = set()

    @staticmethod
    def key_for(symbol: str, timestamp_ms: int) -> str:
        return f'{symbol}-{timestamp_ms // 60000}'

    def is_new(self, symbol: str, timestamp_ms: int) -> bool:
        """True the first time a symbol is seen within a given minute."""
        key = self.key_for(symbol, timestamp_ms)
        if key in self._seen:
            return False
        self._keys.append(key)
        self._seen.add(key)
        if len(self._keys) > self.max_keys:
            self._keys = self._keys[-self.keep_keys:]
            self._seen = set(self._keys)
        return True

    def filter_new(self, items: Iterable, now_ms: Optional[int] = None) -> list:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return [item for item in items if self.is_new(item.symbol, now_ms)]

    def __len__(self) -> int:
        return len(self._keys)
