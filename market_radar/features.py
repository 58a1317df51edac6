import logging
from typing import Iterable, List

from .models import (
    InstitutionalOrder,
    ManipulationZone,
    MarketData,
    TechnicalAnalysis,
    Ticker,
    as_ticker,
)

logger = logging.getLogger(__name__)

FIB_LEVELS = (0.236, 0.382, 0.618)

TAG_HIGH_CONFIDENCE = 'High Confidence'
TAG_LOW_CONFIDENCE = 'Low Confidence'
TAG_ADVANCED_LEARNING = 'Advanced Learning'
TAG_INTERMEDIATE_LEARNING = 'Intermediate Learning'
TAG_INSTITUTIONAL_VOLUME = 'Institutional Volume'
TAG_STRONG_MOVE = 'Strong Move'
TAG_HIGH_VOLATILITY = 'High Volatility'
TAG_MANIPULATION_ZONE = 'Manipulation Zone Detected'
TAG_INSTITUTIONAL_ORDER = 'Institutional Order Detected'
TAG_STRONG_UPTREND = 'Strong Uptrend'
TAG_STRONG_DOWNTREND = 'Strong Downtrend'
TAG_ACCUMULATION = 'Accumulation/Distribution'


def compute_strength(price_change_pct: float, quote_volume: float, price: float, open_price: float) -> float:
    price_strength = min(abs(price_change_pct) * 10, 50)
    volume_strength = min(quote_volume / 1e9 * 20, 30)
    momentum = 20 if price > open_price else 0
    return min(price_strength + volume_strength + momentum, 100)


def compute_zones(price: float, high: float, low: float):
    """Fibonacci-style support and resistance levels, each sorted descending."""
    price_range = high - low
    resistance = sorted((price + price_range * f for f in FIB_LEVELS), reverse=True)
    support = sorted((price - price_range * f for f in FIB_LEVELS), reverse=True)
    return support, resistance


def compute_base_confidence(volume_delta: float, volatility: float, trade_intensity: float) -> float:
    volume_conf = min(volume_delta / 10, 0.4)
    volatility_conf = max(0.0, 0.3 - volatility * 10)
    trade_conf = min(trade_intensity / 5, 0.3)
    return max(0.1, min(1.0, volume_conf + volatility_conf + trade_conf))


def detect_manipulation_zones(ticker: Ticker, volume_delta: float, volatility: float,
                              support: List[float], resistance: List[float]) -> List[ManipulationZone]:
    zones = []
    pct = ticker.price_change_percent
    # liquidity sweep across the whole session range
    if volume_delta > 5 and volatility > 0.02:
        zones.append(ManipulationZone(
            price_min=ticker.low_price,
            price_max=ticker.high_price,
            confidence=min(volume_delta / 10, 0.9),
        ))
    # order block between the nearest levels
    if abs(pct) > 3 and volume_delta > 3:
        zones.append(ManipulationZone(
            price_min=support[0],
            price_max=resistance[0],
            confidence=min((abs(pct) + volume_delta) / 15, 0.85),
        ))
    return zones


def detect_institutional_orders(ticker: Ticker, volume_delta: float) -> List[InstitutionalOrder]:
    orders = []
    pct = ticker.price_change_percent
    price = ticker.last_price
    # heavy volume, flat price: accumulation
    if volume_delta > 8 and abs(pct) < 2:
        orders.append(InstitutionalOrder(
            direction='up' if price > ticker.open_price else 'down',
            confidence=min(volume_delta / 12, 0.95),
            price=(ticker.open_price + price) / 2,
        ))
    # heavy volume with a large move: momentum
    if abs(pct) > 5 and volume_delta > 6:
        orders.append(InstitutionalOrder(
            direction='up' if pct > 0 else 'down',
            confidence=min((abs(pct) + volume_delta) / 18, 0.9),
            price=(ticker.low_price + ticker.high_price) / 2,
        ))
    return orders


def build_tags(analysis: TechnicalAnalysis, ticker: Ticker, volume_delta: float, volatility: float) -> List[str]:
    tags = []
    pct = ticker.price_change_percent
    if analysis.confidence > 0.7:
        tags.append(TAG_HIGH_CONFIDENCE)
    elif analysis.confidence < 0.3:
        tags.append(TAG_LOW_CONFIDENCE)

    level = analysis.learning_level
    if level is not None:
        if level > 0.7:
            tags.append(TAG_ADVANCED_LEARNING)
        elif level > 0.4:
            tags.append(TAG_INTERMEDIATE_LEARNING)

    if volume_delta > 8:
        tags.append(TAG_INSTITUTIONAL_VOLUME)
    if abs(pct) > 5:
        tags.append(TAG_STRONG_MOVE)
    if volatility > 0.03:
        tags.append(TAG_HIGH_VOLATILITY)
    if analysis.manipulation_zones:
        tags.append(TAG_MANIPULATION_ZONE)
    if analysis.institutional_orders:
        tags.append(TAG_INSTITUTIONAL_ORDER)
    if analysis.strength > 70:
        tags.append(TAG_STRONG_UPTREND if analysis.trend == 'bullish' else TAG_STRONG_DOWNTREND)
    if volume_delta > 5 and abs(pct) < 1:
        tags.append(TAG_ACCUMULATION)
    return tags


def analyze_ticker(ticker, engine=None) -> TechnicalAnalysis:
    """Derive trend, strength, zones, prediction and confidence from one 24h ticker.

    `engine` is an optional LearningEngine; when it holds stats for the symbol the
    base confidence is passed through its accuracy damping.
    """
    t = as_ticker(ticker)
    price = t.last_price
    pct = t.price_change_percent

    trend = 'bullish' if pct >= 0 else 'bearish'
    strength = compute_strength(pct, t.quote_volume, price, t.open_price)
    support, resistance = compute_zones(price, t.high_price, t.low_price)

    volume_delta = t.quote_volume / 1e9
    volatility = (t.high_price - t.low_price) / price if price > 0 else 0.0
    trade_intensity = t.count / 1e5
    base_confidence = compute_base_confidence(volume_delta, volatility, trade_intensity)

    analysis = TechnicalAnalysis(
        trend=trend,
        strength=strength,
        confidence=base_confidence,
        base_confidence=base_confidence,
        prediction=price * (1 + pct / 200),
        support_zones=support,
        resistance_zones=resistance,
    )

    if engine is not None:
        try:
            stats = engine.get_asset_stats(t.symbol)
            if stats is not None:
                analysis.learning_level = stats.learning_level
                optimized = engine.get_optimized_confidence(t.symbol, base_confidence)
                analysis.optimized_confidence = optimized
                analysis.confidence = optimized
        except Exception as e:
            logger.error(f'Learning lookup failed for {t.symbol}: {e}')

    analysis.manipulation_zones = detect_manipulation_zones(t, volume_delta, volatility, support, resistance)
    analysis.institutional_orders = detect_institutional_orders(t, volume_delta)
    analysis.tags = build_tags(analysis, t, volume_delta, volatility)
    return analysis


def enrich_tickers(tickers: Iterable, engine=None) -> List[MarketData]:
    """Analyse every ticker; a failing symbol gets the neutral analysis instead."""
    enriched = []
    for raw in tickers:
        ticker = as_ticker(raw)
        try:
            analysis = analyze_ticker(ticker, engine)
        except Exception as e:
            logger.error(f'Enrichment failed for {ticker.symbol}: {e}')
            analysis = TechnicalAnalysis.neutral(ticker.last_price)
        enriched.append(MarketData(ticker=ticker, analysis=analysis))
    return enriched
