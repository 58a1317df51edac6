"""
Opportunity selectors, one per trading modality.

Each selector scores every enriched symbol against a fixed rule table,
attaches a human reason per rule that fired, and returns at most 15 items
ordered by score (descending) with the symbol as tie-breaker.

    scalping   high volume, contained volatility, busy tape, small move
    swing      directional move with confidence, momentum and volume
    breakout   big move on volume closing near the session extreme
    reversal   exhausted move rejected from the extreme, or counter flow
    smc        institutional orders and liquidity zones (required)
    fvg        wide range, fast move, thin tape, gap from the open
"""

from typing import Callable, Dict, Iterable, List, Tuple

from .models import MarketData, OpportunityItem, TechnicalAnalysis, as_market_data

MAX_ITEMS = 15


def _prepare(market: Iterable) -> List[Tuple[MarketData, TechnicalAnalysis]]:
    rows = []
    for item in market:
        md = as_market_data(item)
        rows.append((md, md.analysis or TechnicalAnalysis.neutral(md.ticker.last_price)))
    return rows


def _item(md: MarketData, analysis: TechnicalAnalysis, reasons: List[str], score: float) -> OpportunityItem:
    t = md.ticker
    return OpportunityItem(
        symbol=t.symbol,
        last_price=t.last_price,
        price_change_percent=t.price_change_percent,
        strength=analysis.strength,
        confidence=analysis.confidence,
        reasons=reasons,
        score=score,
    )


def _rank(items: List[OpportunityItem]) -> List[OpportunityItem]:
    items.sort(key=lambda o: (-o.score, o.symbol))
    return items[:MAX_ITEMS]


def select_scalping_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0
        change = abs(t.price_change_percent)
        volatility = (t.high_price - t.low_price) / t.last_price if t.last_price > 0 else None

        if t.quote_volume > 5e9:
            reasons.append('High volume')
            score += 30
        elif t.quote_volume > 2e9:
            reasons.append('Good volume')
            score += 15

        if volatility is not None:
            if volatility < 0.02:
                reasons.append('Low volatility')
                score += 25
            elif volatility < 0.04:
                reasons.append('Moderate volatility')
                score += 10

        if t.count > 100_000:
            reasons.append('High trade frequency')
            score += 20
        elif t.count > 50_000:
            reasons.append('Good trade frequency')
            score += 10

        if 0.2 < change < 1.5:
            reasons.append('Ideal scalping range')
            score += 25

        if len(reasons) >= 2:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


def select_swing_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0
        pct = t.price_change_percent
        direction = 'uptrend' if pct > 0 else 'downtrend'

        if abs(pct) > 3:
            reasons.append(f'Strong {direction}')
            score += 30
        elif abs(pct) > 1.5:
            reasons.append(f'Moderate {direction}')
            score += 15

        if analysis.confidence > 0.7:
            reasons.append('High confidence signal')
            score += 25
        elif analysis.confidence > 0.5:
            reasons.append('Good confidence signal')
            score += 12

        if analysis.strength > 70:
            reasons.append('Strong momentum')
            score += 25
        elif analysis.strength > 50:
            reasons.append('Good momentum')
            score += 12

        if t.quote_volume > 3e9:
            reasons.append('Sustained volume')
            score += 20

        if len(reasons) >= 2:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


def select_breakout_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0
        pct = t.price_change_percent
        price_range = t.high_price - t.low_price

        if abs(pct) > 4:
            reasons.append('Strong breakout move')
            score += 35
        elif abs(pct) > 2.5:
            reasons.append('Moderate breakout move')
            score += 20

        if t.quote_volume > 8e9:
            reasons.append('Volume surge')
            score += 30
        elif t.quote_volume > 5e9:
            reasons.append('High volume')
            score += 15

        if price_range > 0:
            from_high = (t.high_price - t.last_price) / price_range
            from_low = (t.last_price - t.low_price) / price_range
            if pct > 0 and from_high < 0.15:
                reasons.append('Near 24h high')
                score += 25
            elif pct < 0 and from_low < 0.15:
                reasons.append('Near 24h low')
                score += 25

        if t.last_price > 0 and price_range / t.last_price > 0.05:
            reasons.append('High volatility expansion')
            score += 20

        if len(reasons) >= 2:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


def select_reversal_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0
        pct = t.price_change_percent
        price_range = t.high_price - t.low_price

        if abs(pct) > 5:
            reasons.append('Extreme move - potential exhaustion')
            score += 30
        elif abs(pct) > 3:
            reasons.append('Strong move - watch for reversal')
            score += 15

        if price_range > 0:
            from_high = (t.high_price - t.last_price) / price_range
            from_low = (t.last_price - t.low_price) / price_range
            if pct > 0 and from_high > 0.5:
                reasons.append('Rejection from high')
                score += 25
            elif pct < 0 and from_low > 0.5:
                reasons.append('Rejection from low')
                score += 25

        if t.quote_volume > 6e9 and abs(pct) < 2:
            reasons.append('Volume divergence')
            score += 25

        if analysis.manipulation_zones:
            reasons.append('Manipulation zone detected')
            score += 20

        if analysis.institutional_orders:
            order = analysis.institutional_orders[0]
            if (pct > 0 and order.direction == 'down') or (pct < 0 and order.direction == 'up'):
                reasons.append('Counter-trend institutional order')
                score += 25

        if len(reasons) >= 2:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


def select_smc_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0.0
        pct = t.price_change_percent
        orders = analysis.institutional_orders
        zones = analysis.manipulation_zones

        if orders:
            order = orders[0]
            reasons.append(f"Institutional {'buying' if order.direction == 'up' else 'selling'} detected")
            score += order.confidence * 40

        if zones:
            reasons.append('Liquidity zone identified')
            score += zones[0].confidence * 30

        if t.quote_volume > 8e9 and abs(pct) < 1.5:
            reasons.append('Accumulation/distribution pattern')
            score += 25

        if t.quote_volume > 5e9 and abs(pct) > 3:
            reasons.append('Order block formation')
            score += 20

        if analysis.confidence > 0.65:
            reasons.append('High analysis confidence')
            score += 15

        if orders or zones:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


def select_fvg_opportunities(market: Iterable) -> List[OpportunityItem]:
    out = []
    for md, analysis in _prepare(market):
        t = md.ticker
        reasons, score = [], 0
        pct = t.price_change_percent
        volatility = (t.high_price - t.low_price) / t.last_price if t.last_price > 0 else 0.0

        if volatility > 0.06:
            reasons.append('Large price imbalance')
            score += 35
        elif volatility > 0.04:
            reasons.append('Moderate price imbalance')
            score += 20

        if abs(pct) > 4:
            reasons.append('Fast move - gap created')
            score += 30
        elif abs(pct) > 2.5:
            reasons.append('Quick move - potential gap')
            score += 15

        if t.count > 0 and t.quote_volume / t.count > 50_000 and volatility > 0.03:
            reasons.append('Low liquidity gap')
            score += 25

        if t.open_price > 0 and abs((t.last_price - t.open_price) / t.open_price) > 0.03:
            reasons.append('Gap from session open')
            score += 20

        if (analysis.support_zones or analysis.resistance_zones) and volatility > 0.03:
            reasons.append('Key zones for gap fill')
            score += 15

        if len(reasons) >= 2:
            out.append(_item(md, analysis, reasons, score))
    return _rank(out)


SELECTORS: Dict[str, Callable[[Iterable], List[OpportunityItem]]] = {
    'scalping': select_scalping_opportunities,
    'swing': select_swing_opportunities,
    'breakout': select_breakout_opportunities,
    'reversal': select_reversal_opportunities,
    'smc': select_smc_opportunities,
    'fvg': select_fvg_opportunities,
}


def select_all_opportunities(market: Iterable) -> Dict[str, List[OpportunityItem]]:
    market = [as_market_data(m) for m in market]
    return {name: selector(market) for name, selector in SELECTORS.items()}
