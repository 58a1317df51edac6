import pytest

from conftest import make_ticker
from market_radar.calibration import (
    RECONCILE_WINDOW_MS,
    LearningEngine,
    optimize_weights,
    record_predictions,
    update_past_predictions,
)
from market_radar.models import (
    IndicatorValues,
    LearningConfig,
    LearningMaturity,
    MarketData,
    PredictionRecord,
    TechnicalAnalysis,
)
from market_radar.store import MemoryStore, SqliteStore

T0 = 1_700_000_000_000
HOUR = 60 * 60 * 1000
DAY = 24 * HOUR


def prediction(symbol='BTCUSDT', ts=T0, price=100.0, confidence=0.8, indicators=None):
    return PredictionRecord(
        symbol=symbol,
        timestamp=ts,
        predicted_price=price,
        confidence=confidence,
        indicators=indicators or IndicatorValues(0.5, 0.5, 0.5, 0.5),
    )


def seed_reconciled(engine, symbol, correct, wrong, ts=T0):
    for _ in range(correct):
        engine.record_prediction(prediction(symbol, ts, price=101.0))
    for _ in range(wrong):
        engine.record_prediction(prediction(symbol, ts, price=120.0))
    engine.update_prediction_result(symbol, ts + HOUR, 100.0)


def test_initialize_writes_default_config(engine):
    assert engine.get_config() == LearningConfig()


def test_confidence_threshold_and_favourite_relaxation(engine):
    low = prediction(confidence=0.45)
    assert engine.record_prediction(low) is False
    assert low.id is None

    fav = prediction(confidence=0.45)
    assert engine.record_prediction(fav, is_favourite=True) is True
    assert fav.id is not None
    assert [p.id for p in engine.get_predictions('BTCUSDT')] == [fav.id]


def test_disabled_engine_records_nothing(engine):
    engine.set_config(LearningConfig(enabled=False))
    assert engine.record_prediction(prediction()) is False
    assert engine.get_predictions() == []


def test_reconcile_marks_within_tolerance_and_window(engine):
    engine.record_prediction(prediction(price=102.0))
    engine.record_prediction(prediction(price=110.0))
    engine.record_prediction(prediction(ts=T0 - 2 * DAY, price=100.0))

    assert engine.update_prediction_result('BTCUSDT', T0 + HOUR, 100.0) == 2
    by_price = {p.predicted_price: p for p in engine.get_predictions('BTCUSDT')}
    assert by_price[102.0].was_correct is True
    assert by_price[110.0].was_correct is False
    assert by_price[100.0].reconciled is False

    # already reconciled predictions are never touched again
    assert engine.update_prediction_result('BTCUSDT', T0 + HOUR, 50.0) == 0
    refreshed = {p.predicted_price: p for p in engine.get_predictions('BTCUSDT')}
    assert refreshed[102.0].actual_price == 100.0


def test_reconcile_window_is_exclusive(engine):
    engine.record_prediction(prediction())
    assert engine.update_prediction_result('BTCUSDT', T0 + RECONCILE_WINDOW_MS, 100.0) == 0


def test_stats_wait_for_minimum_predictions(engine):
    seed_reconciled(engine, 'ETHUSDT', correct=6, wrong=3)
    assert engine.update_asset_stats('ETHUSDT', now_ms=T0) is None
    assert engine.maturity('ETHUSDT') is LearningMaturity.COLD


def test_stats_and_learning_level(engine):
    seed_reconciled(engine, 'ETHUSDT', correct=7, wrong=3)
    stats = engine.update_asset_stats('ETHUSDT', now_ms=T0)

    assert stats.total_predictions == 10
    assert stats.correct_predictions == 7
    assert stats.accuracy_rate == pytest.approx(0.7)
    assert stats.learning_level == pytest.approx(0.7 * 0.7 + 0.1 * 0.3)
    assert stats.average_confidence == pytest.approx(0.8)
    assert sum(stats.indicator_weights.values()) == pytest.approx(1.0)
    assert engine.get_asset_stats('ETHUSDT') == stats
    assert engine.maturity('ETHUSDT') is LearningMaturity.LEARNING


def test_optimized_confidence_damped_by_accuracy(engine):
    assert engine.get_optimized_confidence('ETHUSDT', 0.8) == 0.8
    seed_reconciled(engine, 'ETHUSDT', correct=7, wrong=3)
    engine.update_asset_stats('ETHUSDT', now_ms=T0)
    assert engine.get_optimized_confidence('ETHUSDT', 0.8) == pytest.approx(0.8 * 0.85)


def test_raising_the_minimum_moves_asset_back_to_observing(engine):
    seed_reconciled(engine, 'ETHUSDT', correct=10, wrong=0)
    engine.update_asset_stats('ETHUSDT', now_ms=T0)
    engine.set_config(LearningConfig(min_predictions_for_learning=50))

    assert engine.maturity('ETHUSDT') is LearningMaturity.OBSERVING
    assert engine.get_optimized_confidence('ETHUSDT', 0.6) == 0.6


def test_weight_blend_toward_correct_indicators():
    correct = [prediction(indicators=IndicatorValues(0.5, 0.5, 0.5, 0.5)) for _ in range(3)]
    prior = {'smc': 0.7, 'volume_delta': 0.1, 'liquidity': 0.1, 'fvg': 0.1}
    weights = optimize_weights(correct, prior, 0.1)

    assert weights['smc'] == pytest.approx(0.655)
    assert weights['fvg'] == pytest.approx(0.115)
    assert sum(weights.values()) == pytest.approx(1.0)


def test_weight_blend_without_signal_only_renormalises():
    weights = optimize_weights([], {'smc': 2.0, 'volume_delta': 2.0, 'liquidity': 0.0, 'fvg': 0.0}, 0.1)
    assert weights == {'smc': 0.5, 'volume_delta': 0.5, 'liquidity': 0.0, 'fvg': 0.0}


def test_high_learning_assets_sorted(engine):
    seed_reconciled(engine, 'AAAUSDT', correct=10, wrong=0)
    seed_reconciled(engine, 'BBBUSDT', correct=9, wrong=1)
    seed_reconciled(engine, 'CCCUSDT', correct=2, wrong=8)
    for symbol in ('AAAUSDT', 'BBBUSDT', 'CCCUSDT'):
        engine.update_asset_stats(symbol, now_ms=T0)

    assert [s.symbol for s in engine.get_high_learning_assets()] == ['AAAUSDT', 'BBBUSDT']


def test_clear_old_predictions(engine):
    engine.record_prediction(prediction(ts=T0 - 31 * DAY))
    engine.record_prediction(prediction(ts=T0 - DAY))

    assert engine.clear_old_predictions(30, now_ms=T0) == 1
    assert [p.timestamp for p in engine.get_predictions()] == [T0 - DAY]


def test_reset_drops_everything(engine):
    engine.record_prediction(prediction())
    engine.reset()
    assert engine.get_predictions() == []
    assert engine.get_all_asset_stats() == []


def analysed(symbol, confidence, price=100.0):
    analysis = TechnicalAnalysis(trend='bullish', strength=50.0, confidence=confidence, prediction=price * 1.01)
    return MarketData(ticker=make_ticker(symbol, last=price), analysis=analysis)


def test_record_predictions_relaxes_threshold_for_prioritised_favourites(engine):
    market = [analysed('ETHUSDT', 0.45), analysed('SOLUSDT', 0.45), analysed('BTCUSDT', 0.9)]

    assert record_predictions(market, engine, favourites=['SOLUSDT'], now_ms=T0) == 1
    assert record_predictions(market, engine, favourites=['SOLUSDT'], prioritize_favourites=True, now_ms=T0) == 2
    assert sorted({p.symbol for p in engine.get_predictions()}) == ['BTCUSDT', 'SOLUSDT']


def test_record_predictions_logs_engine_failures(caplog):
    class BrokenEngine:
        def record_prediction(self, record, is_favourite=False):
            raise OSError('disk full')

    assert record_predictions([analysed('ETHUSDT', 0.9)], BrokenEngine(), now_ms=T0) == 0
    assert 'disk full' in caplog.text


def test_update_past_predictions_reconciles_and_builds_stats():
    engine = LearningEngine(MemoryStore())
    engine.initialize()
    market = [analysed('ETHUSDT', 0.9, price=100.0)]
    for i in range(10):
        record_predictions(market, engine, now_ms=T0 + i)

    later = [analysed('ETHUSDT', 0.9, price=101.0)]
    assert update_past_predictions(later, engine, now_ms=T0 + HOUR) == 10

    stats = engine.get_asset_stats('ETHUSDT')
    assert stats.total_predictions == 10
    assert stats.accuracy_rate == 1.0


def test_small_stats_row_leaves_confidence_untouched(engine):
    stats = {
        'symbol': 'SOLUSDT', 'total_predictions': 5, 'correct_predictions': 1, 'accuracy_rate': 0.2,
        'average_confidence': 0.7, 'indicator_weights': None, 'learning_level': 0.1, 'last_updated': T0,
    }
    engine.store.put('asset_stats', 'SOLUSDT', stats)
    assert engine.maturity('SOLUSDT') is LearningMaturity.OBSERVING
    assert engine.get_optimized_confidence('SOLUSDT', 0.73) == 0.73


def test_retention_sweep_rebuilds_totals(engine):
    seed_reconciled(engine, 'ETHUSDT', correct=10, wrong=0, ts=T0 - 40 * DAY)
    seed_reconciled(engine, 'ETHUSDT', correct=5, wrong=5, ts=T0)
    assert engine.update_asset_stats('ETHUSDT', now_ms=T0).total_predictions == 20

    assert engine.clear_old_predictions(30, now_ms=T0) == 10
    stats = engine.update_asset_stats('ETHUSDT', now_ms=T0)
    assert stats.total_predictions == 10
    assert stats.accuracy_rate == pytest.approx(0.5)


class CountingStore(SqliteStore):
    def __init__(self, path):
        super().__init__(path)
        self.rows_read = 0

    def scan(self, *args, **kwargs):
        rows = super().scan(*args, **kwargs)
        self.rows_read += len(rows)
        return rows


def test_learning_cycle_reads_only_recent_predictions(tmp_path):
    store = CountingStore(str(tmp_path / 'learning.db'))
    engine = LearningEngine(store)
    engine.initialize()
    with store.batch():
        for i in range(3000):
            store.append('predictions', {
                'symbol': 'ETHUSDT', 'timestamp': T0 - 2 * DAY + i, 'predicted_price': 101.0,
                'confidence': 0.8, 'indicators': {'smc': 0.5, 'volume_delta': 0.5, 'liquidity': 0.5, 'fvg': 0.5},
                'actual_price': 100.0, 'was_correct': True,
            })

    market = [analysed('ETHUSDT', 0.9, price=100.0)]

    def cycle(now_ms):
        with engine.batch():
            update_past_predictions(market, engine, now_ms=now_ms)
            record_predictions(market, engine, now_ms=now_ms)

    # the first pass builds the running totals from history once
    cycle(T0)
    store.rows_read = 0
    cycle(T0 + 30_000)

    assert store.rows_read < 10
    stats = engine.get_asset_stats('ETHUSDT')
    assert stats.total_predictions == 3001
    assert stats.correct_predictions == 3001
