"""
Per-cycle orchestration: fetch tickers, enrich, learn, detect, select.

One MarketRadar owns every piece of cross-cycle state (learning engine,
preferences, previous funding/OI, alert dedup keys, notification cooldowns)
so nothing lives in module globals.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from . import preferences
from .calibration import LearningEngine, indicators_for, record_predictions, update_past_predictions
from .depth import fetch_order_book
from .errors import DataFeedBlocked, DataFeedUnavailable, MarketDataError
from .features import analyze_ticker, enrich_tickers
from .feeds import (
    ProxyBackend,
    fetch_funding_rates,
    fetch_futures_ticker,
    fetch_futures_tickers,
    fetch_open_interest,
    filter_major_pairs,
)
from .institutional import futures_institutional_orders, spot_institutional_orders
from .local_signals import AlertTracker, generate_radar_alerts, generate_recommendations
from .models import (
    DataStatus,
    InstitutionalSignalsSnapshot,
    MarketData,
    OpportunityItem,
    OrderBookSnapshot,
    PredictionRecord,
    RadarAlert,
    Recommendation,
    RecommendationResult,
)
from .notifier import NotificationState, TelegramNotifier, notify_alerts
from .opportunities import select_all_opportunities
from .radar import RadarState
from .sensitivity import RadarSensitivityPolicy, get_sensitivity_policy, normalize_preset
from .snapshot import transform_unified_snapshot
from .trade_plan import recommend_for_symbol

logger = logging.getLogger(__name__)

STALE_AFTER_MS = 120000
PROVIDER_DIRECT = 'Binance (direct)'
PROVIDER_BACKEND = 'Backend proxy'


def wrap_feed_error(error: MarketDataError) -> MarketDataError:
    message = str(error)
    lowered = message.lower()
    if isinstance(error, DataFeedBlocked) or 'blocked' in lowered or 'restricted' in lowered:
        return DataFeedBlocked(f'Binance access blocked: {message}')
    return DataFeedUnavailable(f'Live market data unavailable: {message}')


@dataclass
class CycleResult:
    market: List[MarketData]
    alerts: List[RadarAlert]
    new_alerts: List[RadarAlert]
    recommendations: List[Recommendation]
    new_recommendations: List[Recommendation]
    opportunities: Dict[str, List[OpportunityItem]]
    notified: List[RadarAlert] = field(default_factory=list)
    predictions_recorded: int = 0
    predictions_reconciled: int = 0
    timestamp: int = 0


class MarketRadar:
    def __init__(self, engine: LearningEngine, prefs: preferences.PreferenceStore,
                 backend: Optional[ProxyBackend] = None, notifier: Optional[TelegramNotifier] = None,
                 default_preset: str = 'balanced', majors: Optional[List[str]] = None):
        self.engine = engine
        self.prefs = prefs
        self.backend = backend
        self.notifier = notifier
        self.default_preset = normalize_preset(default_preset)
        self.majors = majors
        self.radar_state = RadarState()
        self.alert_tracker = AlertTracker()
        self.recommendation_tracker = AlertTracker()
        self.notification_state = NotificationState()
        self.status = DataStatus(provider=PROVIDER_DIRECT)
        self.market: List[MarketData] = []

    def startup(self, retention_days: int = 30) -> None:
        self.engine.initialize()
        try:
            self.engine.clear_old_predictions(retention_days)
        except Exception as e:
            logger.error(f'Retention sweep failed: {e}')
        if preferences.consume_reset_success(self.prefs):
            logger.info('Previous reset from scratch completed successfully')

    def policy(self) -> RadarSensitivityPolicy:
        stored = self.prefs.get(preferences.SENSITIVITY_KEY)
        return get_sensitivity_policy(stored if stored is not None else self.default_preset)

    def fetch_tickers(self):
        """Futures tickers, or the backend snapshot when direct access fails."""
        try:
            tickers = fetch_futures_tickers()
            self.status.provider = PROVIDER_DIRECT
            return tickers
        except MarketDataError as e:
            if self.backend is None:
                raise
            logger.warning(f'Direct futures fetch failed, using backend snapshot: {e}')
            try:
                snapshot = self.backend.get_futures_snapshot()
            except (requests.exceptions.RequestException, ValueError) as fallback_error:
                raise DataFeedUnavailable(
                    f'{e}. Backend fallback also failed: {fallback_error}'
                ) from fallback_error
            tickers = transform_unified_snapshot(snapshot)
            self.status.provider = PROVIDER_BACKEND
            return tickers

    def _fetch_metrics(self, symbols: List[str]):
        with ThreadPoolExecutor(max_workers=2) as pool:
            funding_job = pool.submit(fetch_funding_rates, symbols)
            oi_job = pool.submit(fetch_open_interest, symbols)
            wait([funding_job, oi_job])
        return funding_job.result(), oi_job.result()

    def refresh(self, now_ms: Optional[int] = None) -> CycleResult:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        self.status.is_fetching = True
        try:
            try:
                tickers = self.fetch_tickers()
            except MarketDataError as e:
                wrapped = wrap_feed_error(e)
                self.status.has_error = True
                self.status.error_message = str(wrapped)
                raise wrapped from e

            majors = filter_major_pairs(tickers, self.majors)
            market = enrich_tickers(majors, self.engine)
            favourites = preferences.get_favourites(self.prefs)
            prioritize = preferences.favourites_priority(self.prefs)

            # reconcile before recording so fresh predictions wait for a later price
            with self.engine.batch():
                reconciled = update_past_predictions(market, self.engine, favourites, prioritize, now_ms=now_ms)
                recorded = record_predictions(market, self.engine, favourites, prioritize, now_ms=now_ms)

            symbols = [md.symbol for md in market]
            funding, open_interest = self._fetch_metrics(symbols)
            policy = self.policy()
            alerts = generate_radar_alerts(
                market, policy, self.radar_state, funding, open_interest,
                filters=preferences.load_radar_filters(self.prefs), now_ms=now_ms,
            )
            recommendations = generate_recommendations(market, now_ms=now_ms)
            opportunities = select_all_opportunities(market)

            new_alerts = self.alert_tracker.filter_new(alerts, now_ms)
            new_recommendations = self.recommendation_tracker.filter_new(recommendations, now_ms)
            notified = []
            if self.notifier is not None and new_alerts:
                notified = notify_alerts(
                    new_alerts, self.notifier, policy, self.notification_state,
                    enabled=preferences.alerts_enabled(self.prefs), favourites=favourites, now_ms=now_ms,
                )

            self.market = market
            self.status.has_error = False
            self.status.error_message = None
            self.status.last_update = now_ms
            logger.info(
                f'Cycle: {len(market)} assets, {len(alerts)} alerts ({len(new_alerts)} new), '
                f'{recorded} predictions recorded, {reconciled} reconciled'
            )
            return CycleResult(
                market=market,
                alerts=alerts,
                new_alerts=new_alerts,
                recommendations=recommendations,
                new_recommendations=new_recommendations,
                opportunities=opportunities,
                notified=notified,
                predictions_recorded=recorded,
                predictions_reconciled=reconciled,
                timestamp=now_ms,
            )
        finally:
            self.status.is_fetching = False

    def data_status(self, now_ms: Optional[int] = None) -> DataStatus:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        last = self.status.last_update
        self.status.is_stale = last is None or now_ms - last > STALE_AFTER_MS
        return self.status

    def search_asset(self, symbol: str, now_ms: Optional[int] = None) -> MarketData:
        """Look up any futures symbol on demand and record a prediction for it."""
        symbol = symbol.upper()
        ticker = fetch_futures_ticker(symbol)
        md = MarketData(ticker=ticker, analysis=analyze_ticker(ticker, self.engine))
        is_favourite = (
            preferences.favourites_priority(self.prefs)
            and symbol in preferences.get_favourites(self.prefs)
        )
        record = PredictionRecord(
            symbol=symbol,
            timestamp=now_ms if now_ms is not None else int(time.time() * 1000),
            predicted_price=md.analysis.prediction,
            confidence=md.analysis.confidence,
        )
        try:
            record.indicators = indicators_for(md)
            self.engine.record_prediction(record, is_favourite=is_favourite)
        except Exception as e:
            logger.error(f'Failed to record prediction for {symbol}: {e}')
        return md

    def trade_plan(self, symbol: str, modality: str) -> RecommendationResult:
        return recommend_for_symbol(modality, symbol.upper(), self.market)

    def order_book(self, symbol: str = 'BTCUSDT', venue: str = 'futures', step: Optional[float] = None) -> OrderBookSnapshot:
        return fetch_order_book(symbol, venue=venue, step=step, backend=self.backend)

    def institutional_orders(self, symbol: str = 'BTCUSDT') -> Dict[str, InstitutionalSignalsSnapshot]:
        """Futures and spot detector snapshots; a failing venue is logged and omitted."""
        out = {}
        try:
            out['futures'] = futures_institutional_orders(symbol)
        except MarketDataError as e:
            logger.error(f'Futures institutional detector failed: {e}')
        try:
            out['spot'] = spot_institutional_orders(symbol, backend=self.backend)
        except MarketDataError as e:
            logger.error(f'Spot institutional detector failed: {e}')
        return out

    def reset_from_scratch(self) -> None:
        preferences.reset_from_scratch(self.engine, self.prefs)
        self.radar_state.clear()
        self.notification_state = NotificationState()
        self.alert_tracker = AlertTracker()
        self.recommendation_tracker = AlertTracker()
        self.engine.initialize()
