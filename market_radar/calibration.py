"""
Learning engine: records directional predictions, scores them against later
prices, and turns per-asset accuracy into indicator weights and damped
confidence.

Maturity per symbol is explicit:

    COLD       no stats row yet
    OBSERVING  stats row below the configured learning minimum
    LEARNING   enough reconciled predictions; confidence is damped by accuracy
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

from .models import (
    DEFAULT_WEIGHTS,
    AssetLearningStats,
    IndicatorValues,
    LearningConfig,
    LearningMaturity,
    MarketData,
    PredictionRecord,
    as_market_data,
)
from .store import RecordStore

logger = logging.getLogger(__name__)

PREDICTIONS = 'predictions'
ASSET_STATS = 'asset_stats'
# running totals over each symbol's reconciled predictions
TALLIES = 'asset_tallies'
CONFIG = 'config'
CONFIG_KEY = 'config'

RECONCILE_WINDOW_MS = 24 * 60 * 60 * 1000
CORRECT_TOLERANCE = 0.05
OPTIMIZATION_MIN_PREDICTIONS = 10
FAVOURITE_THRESHOLD_FACTOR = 0.8


def _now_ms() -> int:
    return int(time.time() * 1000)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class LearningEngine:
    def __init__(self, store: RecordStore):
        self.store = store

    def initialize(self) -> None:
        self.store.initialize()
        if self.store.get(CONFIG, CONFIG_KEY) is None:
            self.set_config(LearningConfig())

    # config

    def get_config(self) -> LearningConfig:
        row = self.store.get(CONFIG, CONFIG_KEY)
        return LearningConfig.from_dict(row)

    def set_config(self, config: LearningConfig) -> None:
        self.store.put(CONFIG, CONFIG_KEY, config.to_dict())

    # predictions

    def record_prediction(self, record: PredictionRecord, is_favourite: bool = False) -> bool:
        """Append the record if its confidence clears the (favourite-relaxed) threshold."""
        config = self.get_config()
        if not config.enabled:
            return False
        threshold = config.confidence_threshold
        if is_favourite:
            threshold *= FAVOURITE_THRESHOLD_FACTOR
        if record.confidence < threshold:
            return False
        data = record.to_dict()
        data.pop('id', None)
        data['actual_price'] = None
        data['was_correct'] = None
        record.id = self.store.append(PREDICTIONS, data)
        return True

    def get_predictions(self, symbol: Optional[str] = None) -> List[PredictionRecord]:
        if symbol is None:
            rows = self.store.scan(PREDICTIONS)
        else:
            rows = self.store.scan(PREDICTIONS, 'symbol', symbol)
        return [PredictionRecord.from_dict(r) for r in rows]

    def update_prediction_result(self, symbol: str, timestamp: int, actual_price: float) -> int:
        """Reconcile open predictions within 24h of `timestamp`; returns how many were closed."""
        if actual_price is None or actual_price <= 0:
            return 0
        window = (timestamp - RECONCILE_WINDOW_MS, timestamp + RECONCILE_WINDOW_MS)
        open_rows = [
            row for row in self.store.scan(PREDICTIONS, 'symbol', symbol, timestamp_range=window)
            if row.get('actual_price') is None
        ]
        if not open_rows:
            return 0
        with self.store.batch():
            tally = self._tally(symbol)
            for row in open_rows:
                row['actual_price'] = actual_price
                error = abs(row['predicted_price'] - actual_price) / actual_price
                row['was_correct'] = error < CORRECT_TOLERANCE
                self.store.put(PREDICTIONS, row['id'], row)
                _add_to_tally(tally, row)
            self.store.put(TALLIES, symbol, tally)
        return len(open_rows)

    def _tally(self, symbol: str) -> Dict:
        """Stored running totals, rebuilt from the symbol's predictions when missing."""
        tally = self.store.get(TALLIES, symbol)
        if tally is not None:
            return tally
        tally = _empty_tally(symbol)
        for row in self.store.scan(PREDICTIONS, 'symbol', symbol):
            if row.get('actual_price') is not None:
                _add_to_tally(tally, row)
        self.store.put(TALLIES, symbol, tally)
        return tally

    # stats

    def get_asset_stats(self, symbol: str) -> Optional[AssetLearningStats]:
        row = self.store.get(ASSET_STATS, symbol)
        return AssetLearningStats.from_dict(row) if row else None

    def get_all_asset_stats(self) -> List[AssetLearningStats]:
        return [AssetLearningStats.from_dict(r) for r in self.store.scan(ASSET_STATS)]

    def update_asset_stats(self, symbol: str, now_ms: Optional[int] = None) -> Optional[AssetLearningStats]:
        """Rebuild the symbol's stats from its reconciled predictions.

        Nothing is written until the reconciled count reaches the configured minimum.
        """
        config = self.get_config()
        if not config.enabled:
            return None
        tally = self._tally(symbol)
        total = tally['total']
        if total == 0 or total < config.min_predictions_for_learning:
            return None

        correct = tally['correct']
        accuracy = correct / total
        average_confidence = tally['confidence_sum'] / total
        averages = {k: v / correct for k, v in tally['indicator_sums'].items()} if correct else None

        previous = self.get_asset_stats(symbol)
        prior_weights = previous.indicator_weights if previous else dict(DEFAULT_WEIGHTS)
        weights = blend_weights(averages, prior_weights, config.learning_rate)

        stats = AssetLearningStats(
            symbol=symbol,
            total_predictions=total,
            correct_predictions=correct,
            accuracy_rate=accuracy,
            average_confidence=average_confidence,
            indicator_weights=weights,
            learning_level=min(accuracy * 0.7 + min(total / 100, 1.0) * 0.3, 1.0),
            last_updated=now_ms if now_ms is not None else _now_ms(),
        )
        self.store.put(ASSET_STATS, symbol, stats.to_dict())
        return stats

    def maturity(self, symbol: str) -> LearningMaturity:
        stats = self.get_asset_stats(symbol)
        if stats is None:
            return LearningMaturity.COLD
        if stats.total_predictions < self.get_config().min_predictions_for_learning:
            return LearningMaturity.OBSERVING
        return LearningMaturity.LEARNING

    def get_optimized_confidence(self, symbol: str, base_confidence: float) -> float:
        stats = self.get_asset_stats(symbol)
        if stats is None or stats.total_predictions < OPTIMIZATION_MIN_PREDICTIONS:
            return base_confidence
        if self.maturity(symbol) is not LearningMaturity.LEARNING:
            return base_confidence
        return _clamp(base_confidence * (0.5 + 0.5 * stats.accuracy_rate))

    def get_high_learning_assets(self, min_learning_level: float = 0.6) -> List[AssetLearningStats]:
        stats = [s for s in self.get_all_asset_stats() if s.learning_level >= min_learning_level]
        return sorted(stats, key=lambda s: s.learning_level, reverse=True)

    # maintenance

    def clear_old_predictions(self, days_to_keep: int = 30, now_ms: Optional[int] = None) -> int:
        now_ms = now_ms if now_ms is not None else _now_ms()
        cutoff = now_ms - days_to_keep * RECONCILE_WINDOW_MS
        deleted = self.store.delete_range(PREDICTIONS, 'timestamp', cutoff)
        if deleted:
            # totals are rebuilt from the surviving predictions on next use
            for tally in self.store.scan(TALLIES):
                self.store.delete(TALLIES, tally['symbol'])
            logger.info(f'Cleared {deleted} predictions older than {days_to_keep} days')
        return deleted

    def batch(self):
        """Group a pass of engine calls into one store transaction."""
        return self.store.batch()

    def reset(self) -> None:
        """Drop the whole learning database."""
        self.store.destroy()
        logger.info('Learning database reset')


def optimize_weights(correct: List[PredictionRecord], prior: Dict[str, float], learning_rate: float) -> Dict[str, float]:
    """Blend prior weights toward the indicator mix seen in correct predictions."""
    averages = None
    if correct:
        averages = {k: sum(getattr(p.indicators, k) for p in correct) / len(correct) for k in DEFAULT_WEIGHTS}
    return blend_weights(averages, prior, learning_rate)


def blend_weights(averages: Optional[Dict[str, float]], prior: Dict[str, float],
                  learning_rate: float) -> Dict[str, float]:
    keys = list(DEFAULT_WEIGHTS)
    weights = {k: float(prior.get(k, DEFAULT_WEIGHTS[k])) for k in keys}
    if averages:
        total_average = sum(averages.get(k, 0.0) for k in keys)
        if total_average > 0:
            for k in keys:
                weights[k] = weights[k] * (1 - learning_rate) + averages.get(k, 0.0) / total_average * learning_rate

    total = sum(weights.values())
    if total <= 0:
        return dict(DEFAULT_WEIGHTS)
    return {k: v / total for k, v in weights.items()}


def _empty_tally(symbol: str) -> Dict:
    return {
        'symbol': symbol,
        'total': 0,
        'correct': 0,
        'confidence_sum': 0.0,
        'indicator_sums': {k: 0.0 for k in DEFAULT_WEIGHTS},
    }


def _add_to_tally(tally: Dict, row: Dict) -> None:
    tally['total'] += 1
    tally['confidence_sum'] += float(row.get('confidence', 0.0))
    if row.get('was_correct'):
        tally['correct'] += 1
        indicators = IndicatorValues.from_dict(row.get('indicators'))
        for k in tally['indicator_sums']:
            tally['indicator_sums'][k] += getattr(indicators, k)


def indicators_for(md: MarketData) -> IndicatorValues:
    t = md.ticker
    analysis = md.analysis
    return IndicatorValues(
        smc=analysis.strength / 100 if analysis else 0.0,
        volume_delta=t.quote_volume / 1e10,
        liquidity=(t.high_price - t.low_price) / t.last_price if t.last_price > 0 else 0.0,
        fvg=abs(t.price_change_percent) / 10,
    )


def _favourites_first(market: Iterable, favourites: Iterable[str], prioritize: bool) -> List[MarketData]:
    items = [as_market_data(m) for m in market]
    if not prioritize:
        return items
    favs = set(favourites)
    return sorted(items, key=lambda md: md.symbol not in favs)


def record_predictions(market: Iterable, engine: LearningEngine, favourites: Iterable[str] = (),
                       prioritize_favourites: bool = False, now_ms: Optional[int] = None) -> int:
    """Record one prediction per analysed symbol; engine errors are logged, not raised."""
    favs = set(favourites)
    now_ms = now_ms if now_ms is not None else _now_ms()
    recorded = 0
    for md in _favourites_first(market, favs, prioritize_favourites):
        if md.analysis is None:
            continue
        record = PredictionRecord(
            symbol=md.symbol,
            timestamp=now_ms,
            predicted_price=md.analysis.prediction,
            confidence=md.analysis.confidence,
            indicators=indicators_for(md),
        )
        try:
            is_favourite = prioritize_favourites and md.symbol in favs
            if engine.record_prediction(record, is_favourite=is_favourite):
                recorded += 1
        except Exception as e:
            logger.error(f'Failed to record prediction for {md.symbol}: {e}')
    return recorded


def update_past_predictions(market: Iterable, engine: LearningEngine, favourites: Iterable[str] = (),
                            prioritize_favourites: bool = False, now_ms: Optional[int] = None) -> int:
    """Reconcile open predictions against current prices, then refresh stats."""
    now_ms = now_ms if now_ms is not None else _now_ms()
    reconciled = 0
    for md in _favourites_first(market, favourites, prioritize_favourites):
        try:
            reconciled += engine.update_prediction_result(md.symbol, now_ms, md.ticker.last_price)
            engine.update_asset_stats(md.symbol, now_ms=now_ms)
        except Exception as e:
            logger.error(f'Failed to update predictions for {md.symbol}: {e}')
    return reconciled
