from typing import Dict, List

from .models import OpportunityItem, RadarAlert, Recommendation, RecommendationResult

ANOMALY_LABELS = {
    'price_move': 'Price move',
    'volume_spike': 'Volume spike',
    'extreme_volatility': 'Extreme volatility',
    'funding_irregularity': 'Funding',
    'open_interest_spike': 'Open interest',
}


def _price(p: float) -> str:
    decimals = 4 if p < 10 else 2
    return f'{p:,.{decimals}f}'.replace(',', ' ')


def _quality(confidence: float) -> str:
    if confidence >= 0.7:
        return '🟢 Strong'
    if confidence >= 0.5:
        return '🟡 Good'
    if confidence >= 0.3:
        return '🟠 Fair'
    return '🔴 Weak'


def format_radar_alert(alert: RadarAlert, favourite: bool = False) -> str:
    arrow = '🟢' if alert.direction == 'up' else '🔴'
    star = ' ⭐' if favourite else ''
    confidence = int(alert.confidence * 100)
    out = [f'{arrow} <b>{alert.symbol}</b>{star} | radar anomaly']
    out.append(f'{_quality(alert.confidence)} {confidence}% | score {alert.anomaly_score:.2f}')
    out.append(f'24h: {alert.percent_change:+.2f}% | volume {alert.volume_ratio:.1f}x median')
    types = ', '.join(ANOMALY_LABELS.get(t, t) for t in alert.anomaly_types)
    out.append(f'Types: {types}')
    for reason in alert.reasons:
        out.append(f'• {reason}')
    return '\n'.join(out)


def format_recommendations(recommendations: List[Recommendation]) -> str:
    if not recommendations:
        return ''
    lines = ['📈 <b>Top bullish candidates</b>']
    for i, rec in enumerate(recommendations, start=1):
        lines.append(
            f'{i:2}. <code>{rec.symbol:10}</code> strength {rec.strength:.0f} | conf {rec.confidence:.0%}'
        )
    return '\n'.join(lines)


def format_opportunities(opportunities: Dict[str, List[OpportunityItem]], per_modality: int = 3) -> str:
    lines = ['🎯 <b>Opportunities</b>']
    for modality, items in opportunities.items():
        if not items:
            continue
        top = ', '.join(f'{o.symbol} ({o.score:.0f})' for o in items[:per_modality])
        lines.append(f'<b>{modality.upper()}</b>: {top}')
    return '\n'.join(lines) if len(lines) > 1 else ''


def format_trade_plan(symbol: str, modality: str, result: RecommendationResult) -> str:
    if not result.success or result.recommendation is None:
        error = result.error
        missing = ', '.join(error.missing_data) if error and error.missing_data else 'n/a'
        reason = error.reason if error else 'unknown'
        return f'⚪️ <b>{symbol}</b> {modality}: {reason} (missing: {missing})'

    rec = result.recommendation
    arrow = '🟢' if rec.direction == 'Long' else '🔴'
    out = [f'{arrow} <b>{symbol}</b> | <b>{rec.direction}</b> ({modality})']
    out.append(f'Entry: <code>{_price(rec.entry)}</code>')
    out.append(f'🎯 TP: <code>{_price(rec.take_profit)}</code>')
    out.append(f'🛑 SL: <code>{_price(rec.stop_loss)}</code>')
    out.append(f'R/R {rec.risk_reward_ratio:.2f} | conf {rec.confidence:.0%}')
    out.extend(f'• {line}' for line in rec.rationale)
    return '\n'.join(out)
