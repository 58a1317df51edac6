"""
Multi-factor radar: flags symbols whose 24h behaviour is abnormal relative to
the rest of the market.

Five independent detectors (price move, volume spike, extreme volatility,
funding irregularity, open-interest spike) each yield a sub-score in [0, 1].
When any non-price detector fires, price-move and volatility are re-tested at
relaxed thresholds (the policy's corroboration multiplier). Confidence rewards
both per-signal strength and breadth of agreement.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Set

import numpy as np

from .models import (
    ANOMALY_TYPES,
    FundingRateData,
    MarketData,
    OpenInterestData,
    RadarAlert,
    Ticker,
    as_market_data,
)
from .sensitivity import RadarSensitivityPolicy

logger = logging.getLogger(__name__)

FUNDING_ABS_THRESHOLD = 0.001     # 0.1% per funding interval
FUNDING_DELTA_THRESHOLD = 0.0005  # 0.05% change since last cycle
OI_CHANGE_THRESHOLD_PCT = 15.0
BREADTH_BONUS_PER_TYPE = 0.1
BREADTH_BONUS_CAP = 0.3


class AnomalyCheck(NamedTuple):
    detected: bool
    score: float
    reason: str = ''


NOT_DETECTED = AnomalyCheck(False, 0.0)


class Baseline(NamedTuple):
    median_volume: float
    median_abs_change: float
    p75_volume: float


@dataclass
class RadarState:
    """Previous-cycle funding rate and open interest per symbol."""

    previous_funding: Dict[str, float] = field(default_factory=dict)
    previous_open_interest: Dict[str, float] = field(default_factory=dict)

    def update(self, funding: Mapping[str, FundingRateData], open_interest: Mapping[str, OpenInterestData]) -> None:
        for symbol, data in funding.items():
            self.previous_funding[symbol] = data.funding_rate
        for symbol, data in open_interest.items():
            self.previous_open_interest[symbol] = data.open_interest

    def clear(self) -> None:
        self.previous_funding.clear()
        self.previous_open_interest.clear()


@dataclass
class RadarFilters:
    enabled_anomaly_types: Set[str] = field(default_factory=lambda: set(ANOMALY_TYPES))
    min_anomaly_score: float = 0.0
    min_confidence: float = 0.0


def compute_baseline(tickers: Iterable[Ticker]) -> Baseline:
    tickers = list(tickers)
    if not tickers:
        return Baseline(0.0, 0.0, 0.0)
    volumes = np.array([t.quote_volume for t in tickers], dtype=float)
    changes = np.abs(np.array([t.price_change_percent for t in tickers], dtype=float))
    return Baseline(
        median_volume=float(np.median(volumes)),
        median_abs_change=float(np.median(changes)),
        p75_volume=float(np.percentile(volumes, 75)),
    )


def check_price_move(pct: float, threshold: float, relaxed: Optional[float] = None) -> AnomalyCheck:
    score = min(abs(pct) / (2 * threshold), 1.0)
    if abs(pct) > threshold:
        return AnomalyCheck(True, score, f'Price move {pct:+.2f}% (threshold {threshold:.1f}%)')
    if relaxed is not None and abs(pct) > relaxed:
        return AnomalyCheck(True, score, f'Price move {pct:+.2f}% (corroborated, threshold {relaxed:.2f}%)')
    return NOT_DETECTED


def check_volume_spike(quote_volume: float, median_volume: float, threshold: float) -> AnomalyCheck:
    if median_volume <= 0:
        return NOT_DETECTED
    ratio = quote_volume / median_volume
    if ratio > threshold:
        return AnomalyCheck(True, min(ratio / (2 * threshold), 1.0), f'Volume {ratio:.1f}x market median')
    return NOT_DETECTED


def check_volatility(ticker: Ticker, threshold: float, relaxed: Optional[float] = None) -> AnomalyCheck:
    if ticker.open_price <= 0:
        return NOT_DETECTED
    range_pct = (ticker.high_price - ticker.low_price) / ticker.open_price * 100
    score = min(range_pct / (2 * threshold), 1.0)
    if range_pct > threshold:
        return AnomalyCheck(True, score, f'24h range {range_pct:.1f}% of open (threshold {threshold:.1f}%)')
    if relaxed is not None and range_pct > relaxed:
        return AnomalyCheck(True, score, f'24h range {range_pct:.1f}% of open (corroborated, threshold {relaxed:.2f}%)')
    return NOT_DETECTED


def check_funding(current: Optional[FundingRateData], previous: Optional[float]) -> AnomalyCheck:
    if current is None:
        return NOT_DETECTED
    rate = current.funding_rate
    delta = abs(rate - previous) if previous is not None else 0.0
    if abs(rate) > FUNDING_ABS_THRESHOLD or delta > FUNDING_DELTA_THRESHOLD:
        score = min(max(abs(rate) / (2 * FUNDING_ABS_THRESHOLD), delta / (2 * FUNDING_DELTA_THRESHOLD)), 1.0)
        reason = f'Funding rate {rate * 100:.3f}%'
        if previous is not None:
            reason += f' (was {previous * 100:.3f}%)'
        return AnomalyCheck(True, score, reason)
    return NOT_DETECTED


def check_open_interest(current: Optional[OpenInterestData], previous: Optional[float]) -> AnomalyCheck:
    if current is None or not previous:
        return NOT_DETECTED
    change_pct = (current.open_interest - previous) / previous * 100
    if abs(change_pct) > OI_CHANGE_THRESHOLD_PCT:
        return AnomalyCheck(
            True,
            min(abs(change_pct) / (2 * OI_CHANGE_THRESHOLD_PCT), 1.0),
            f'Open interest {change_pct:+.1f}% since last cycle',
        )
    return NOT_DETECTED


def alert_confidence(sub_scores: Iterable[float]) -> float:
    """min(mean + breadth bonus, 1), maximised over the k strongest sub-scores.

    Taking the best k keeps confidence non-decreasing as more anomaly types are
    detected: adding a sub-score never lowers the top-k mean for any k.

    Unbalanced scores read higher than the plain mean over every type: [1.0, 0.1]
    gives 1.0 from the single strongest score, where mean + bonus would be 0.75.
    """
    ranked = sorted(sub_scores, reverse=True)
    best = 0.0
    running = 0.0
    for k, score in enumerate(ranked, start=1):
        running += score
        bonus = min(BREADTH_BONUS_PER_TYPE * k, BREADTH_BONUS_CAP)
        best = max(best, min(running / k + bonus, 1.0))
    return best


def detect_anomalies(market: Iterable, policy: RadarSensitivityPolicy, state: RadarState,
                     funding: Optional[Mapping[str, FundingRateData]] = None,
                     open_interest: Optional[Mapping[str, OpenInterestData]] = None,
                     now_ms: Optional[int] = None) -> List[RadarAlert]:
    """Score every symbol and return alerts above the policy's confidence floor.

    `state` is read for previous-cycle metrics and then updated for every
    symbol with fresh funding/OI data, whether or not it alerted.
    """
    funding = funding or {}
    open_interest = open_interest or {}
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    tickers = [_ticker_of(item) for item in market]
    baseline = compute_baseline(tickers)

    alerts = []
    for t in tickers:
        checks: Dict[str, AnomalyCheck] = {
            'price_move': check_price_move(t.price_change_percent, policy.price_change_threshold),
            'volume_spike': check_volume_spike(t.quote_volume, baseline.median_volume, policy.volume_ratio_threshold),
            'extreme_volatility': check_volatility(t, policy.volatility_threshold),
            'funding_irregularity': check_funding(funding.get(t.symbol), state.previous_funding.get(t.symbol)),
            'open_interest_spike': check_open_interest(
                open_interest.get(t.symbol), state.previous_open_interest.get(t.symbol)
            ),
        }

        corroborated = any(checks[k].detected for k in ANOMALY_TYPES if k != 'price_move')
        if corroborated and policy.require_corroboration:
            m = policy.corroboration_multiplier
            if not checks['price_move'].detected:
                checks['price_move'] = check_price_move(
                    t.price_change_percent, policy.price_change_threshold, policy.price_change_threshold * m
                )
            if not checks['extreme_volatility'].detected:
                checks['extreme_volatility'] = check_volatility(
                    t, policy.volatility_threshold, policy.volatility_threshold * m
                )

        detected = [k for k in ANOMALY_TYPES if checks[k].detected]
        if not detected:
            continue
        sub_scores = [checks[k].score for k in detected]
        confidence = alert_confidence(sub_scores)
        if confidence < policy.min_confidence_for_alert:
            continue

        alerts.append(RadarAlert(
            symbol=t.symbol,
            percent_change=t.price_change_percent,
            volume_ratio=t.quote_volume / baseline.median_volume if baseline.median_volume > 0 else 0.0,
            direction='up' if t.price_change_percent >= 0 else 'down',
            confidence=confidence,
            anomaly_score=sum(sub_scores),
            anomaly_types=detected,
            reasons=[checks[k].reason for k in detected],
            timestamp=now_ms,
        ))

    state.update(funding, open_interest)
    alerts.sort(key=lambda a: (-a.anomaly_score, a.symbol))
    logger.debug(f'Radar pass: {len(tickers)} symbols, {len(alerts)} alerts')
    return alerts


def apply_filters(alerts: Iterable[RadarAlert], filters: Optional[RadarFilters]) -> List[RadarAlert]:
    alerts = list(alerts)
    if filters is None:
        return alerts
    return [
        a for a in alerts
        if any(t in filters.enabled_anomaly_types for t in a.anomaly_types)
        and a.anomaly_score >= filters.min_anomaly_score
        and a.confidence >= filters.min_confidence
    ]


def _ticker_of(item) -> Ticker:
    if isinstance(item, Ticker):
        return item
    if isinstance(item, MarketData):
        return item.ticker
    return as_market_data(item).ticker
