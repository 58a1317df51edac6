"""Public entrypoints for the adaptive market radar."""

from .calibration import LearningEngine
from .features import analyze_ticker, enrich_tickers
from .local_signals import generate_radar_alerts, generate_recommendations
from .opportunities import select_all_opportunities
from .radar import RadarFilters, RadarState, detect_anomalies
from .sensitivity import get_sensitivity_policy
from .trade_plan import compute_trade_recommendation

__all__ = [
    'LearningEngine',
    'RadarFilters',
    'RadarState',
    'analyze_ticker',
    'compute_trade_recommendation',
    'detect_anomalies',
    'enrich_tickers',
    'generate_radar_alerts',
    'generate_recommendations',
    'get_sensitivity_policy',
    'select_all_opportunities',
]
