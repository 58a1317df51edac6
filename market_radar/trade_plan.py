from typing import Dict, List, Mapping, NamedTuple, Optional

from .errors import InvalidPayload
from .models import (
    MarketData,
    RecommendationError,
    RecommendationResult,
    TechnicalAnalysis,
    TradeRecommendation,
    Ticker,
    to_float,
)

INSUFFICIENT_DATA = 'Insufficient data to compute recommendation'


class ModalityParams(NamedTuple):
    risk_percent: float
    reward_ratio: float
    entry_offset: float
    atr_multiplier: float


MODALITY_PARAMS: Dict[str, ModalityParams] = {
    'scalping': ModalityParams(0.005, 1.5, 0.001, 1.0),
    'swing': ModalityParams(0.02, 2.5, 0.005, 1.5),
    'breakout': ModalityParams(0.015, 3.0, 0.002, 1.2),
    'reversal': ModalityParams(0.025, 2.0, 0.008, 2.0),  # wider stops
    'smc': ModalityParams(0.018, 2.8, 0.004, 1.5),
    'fvg': ModalityParams(0.012, 2.2, 0.003, 1.3),
}


def _unpack(market):
    """Return (ticker, analysis, missing) without raising on absent price/analysis."""
    if isinstance(market, MarketData):
        ticker, analysis = market.ticker, market.analysis
        missing = []
        if ticker.last_price <= 0:
            missing.append('current price')
        if analysis is None:
            missing.append('technical analysis')
        return ticker, analysis, missing

    payload = dict(market) if isinstance(market, Mapping) else {}
    analysis = payload.pop('analysis', None)
    missing = []
    raw_price = payload.get('lastPrice')
    if not raw_price or raw_price == '0' or to_float(raw_price) <= 0:
        missing.append('current price')
    if not isinstance(analysis, TechnicalAnalysis):
        missing.append('technical analysis')
        analysis = None
    if missing:
        return None, analysis, missing
    return Ticker.from_payload(payload), analysis, missing


def _nearest_below(levels: List[float], ceiling: float, floor: Optional[float] = None) -> Optional[float]:
    candidates = [x for x in levels if x < ceiling and (floor is None or x > floor)]
    return max(candidates) if candidates else None


def _nearest_above(levels: List[float], floor: float, ceiling: Optional[float] = None) -> Optional[float]:
    candidates = [x for x in levels if x > floor and (ceiling is None or x < ceiling)]
    return min(candidates) if candidates else None


def compute_trade_recommendation(modality: str, market) -> RecommendationResult:
    """Entry, stop and target for one asset under a modality's risk parameters.

    Never raises: missing price or analysis is reported in the result.
    """
    try:
        ticker, analysis, missing = _unpack(market)
    except InvalidPayload as e:
        return RecommendationResult(success=False, error=RecommendationError(reason=f'Invalid market data: {e}'))
    if missing:
        return RecommendationResult(
            success=False,
            error=RecommendationError(reason=INSUFFICIENT_DATA, missing_data=missing),
        )

    params = MODALITY_PARAMS.get(modality, MODALITY_PARAMS['swing'])
    price = ticker.last_price
    atr = ticker.high_price - ticker.low_price

    is_bullish = analysis.trend == 'bullish' or ticker.price_change_percent > 0
    if analysis.institutional_orders:
        is_bullish = analysis.institutional_orders[0].direction == 'up'
    direction = 'Long' if is_bullish else 'Short'

    rationale = [
        f"{'Bullish' if analysis.trend == 'bullish' else 'Bearish'} trend detected",
        f'Confidence: {analysis.confidence * 100:.0f}%',
        f'Strength: {analysis.strength:.0f}/100',
    ]
    supports = analysis.support_zones
    resistances = analysis.resistance_zones

    # entry
    if direction == 'Long':
        support = _nearest_below(supports, price, price * 0.95)
        if support:
            entry = support * 1.002
            rationale.append(f'Entry near support at ${support:.2f}')
        else:
            entry = price * (1 - params.entry_offset)
            rationale.append('Entry below current price')
    else:
        resistance = _nearest_above(resistances, price, price * 1.05)
        if resistance:
            entry = resistance * 0.998
            rationale.append(f'Entry near resistance at ${resistance:.2f}')
        else:
            entry = price * (1 + params.entry_offset)
            rationale.append('Entry above current price')

    # stop: the closer of the ATR distance and the next level past entry
    if direction == 'Long':
        atr_stop = entry - atr * params.atr_multiplier
        support = _nearest_below(supports, entry)
        if support and support > atr_stop and support > entry * 0.9:
            stop_loss = support * 0.995
            rationale.append(f'Stop loss below support at ${support:.2f}')
        else:
            stop_loss = max(atr_stop, entry * (1 - params.risk_percent))
            rationale.append(f'Stop loss based on {params.atr_multiplier:.1f}x ATR')
    else:
        atr_stop = entry + atr * params.atr_multiplier
        resistance = _nearest_above(resistances, entry)
        if resistance and resistance < atr_stop and resistance < entry * 1.1:
            stop_loss = resistance * 1.005
            rationale.append(f'Stop loss above resistance at ${resistance:.2f}')
        else:
            stop_loss = min(atr_stop, entry * (1 + params.risk_percent))
            rationale.append(f'Stop loss based on {params.atr_multiplier:.1f}x ATR')

    # target
    reward = abs(entry - stop_loss) * params.reward_ratio
    if direction == 'Long':
        take_profit = entry + reward
        resistance = _nearest_above(resistances, entry, take_profit * 1.2)
        if resistance:
            if analysis.strength > 70:
                take_profit = min(take_profit, resistance * 0.998)
                rationale.append(f'TP targeting resistance at ${resistance:.2f}')
            else:
                take_profit = min(take_profit, resistance * 0.99)
                rationale.append(f'TP before resistance at ${resistance:.2f}')
        else:
            rationale.append(f'TP based on {params.reward_ratio:.1f}:1 R/R ratio')
    else:
        take_profit = entry - reward
        support = _nearest_below(supports, entry, take_profit * 0.8)
        if support:
            if analysis.strength > 70:
                take_profit = max(take_profit, support * 1.002)
                rationale.append(f'TP targeting support at ${support:.2f}')
            else:
                take_profit = max(take_profit, support * 1.01)
                rationale.append(f'TP before support at ${support:.2f}')
        else:
            rationale.append(f'TP based on {params.reward_ratio:.1f}:1 R/R ratio')

    if analysis.institutional_orders:
        order = analysis.institutional_orders[0]
        if (direction == 'Long') == (order.direction == 'up'):
            rationale.append(f'Institutional flow aligned ({order.confidence * 100:.0f}% confidence)')
    if analysis.manipulation_zones:
        rationale.append('Manipulation zone detected - exercise caution')
    rationale.extend(analysis.tags[:2])

    actual_risk = abs(entry - stop_loss)
    actual_reward = abs(take_profit - entry)
    return RecommendationResult(
        success=True,
        recommendation=TradeRecommendation(
            direction=direction,
            entry=entry,
            take_profit=take_profit,
            stop_loss=stop_loss,
            rationale=rationale,
            confidence=analysis.confidence,
            risk_reward_ratio=actual_reward / actual_risk if actual_risk > 0 else 0.0,
        ),
    )


def recommend_for_symbol(modality: str, symbol: str, market) -> RecommendationResult:
    """Look the symbol up in the current market snapshot, then compute."""
    for item in market:
        if isinstance(item, MarketData) and item.symbol == symbol:
            return compute_trade_recommendation(modality, item)
    return RecommendationResult(
        success=False,
        error=RecommendationError(
            reason='Asset not found in current market data',
            missing_data=[f'market data for {symbol}'],
        ),
    )
