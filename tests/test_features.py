import pytest

from conftest import make_ticker
from market_radar import features
from market_radar.features import analyze_ticker, enrich_tickers
from market_radar.models import AssetLearningStats, DEFAULT_WEIGHTS, Ticker


def test_btc_scenario_strength_and_single_liquidity_zone(btc_payload):
    analysis = analyze_ticker(btc_payload)

    assert analysis.trend == 'bullish'
    assert 60 <= analysis.strength <= 100
    assert analysis.strength == pytest.approx(70.4)
    assert len(analysis.manipulation_zones) == 1
    zone = analysis.manipulation_zones[0]
    assert zone.price_min == 48500
    assert zone.price_max == 51000
    assert zone.confidence == pytest.approx(0.9)
    assert analysis.institutional_orders == []


def test_btc_scenario_prediction_confidence_and_tags(btc_payload):
    analysis = analyze_ticker(btc_payload)

    assert analysis.prediction == pytest.approx(50000 * (1 + 2.04 / 200))
    # 0.4 volume + 0.0 volatility + 0.24 trade intensity
    assert analysis.confidence == pytest.approx(0.64)
    assert analysis.tags == [
        'Institutional Volume',
        'High Volatility',
        'Manipulation Zone Detected',
        'Strong Uptrend',
    ]


def test_zones_bracket_price_and_sorted_descending(btc_payload):
    analysis = analyze_ticker(btc_payload)
    assert analysis.support_zones == sorted(analysis.support_zones, reverse=True)
    assert analysis.resistance_zones == sorted(analysis.resistance_zones, reverse=True)
    assert all(s < 50000 for s in analysis.support_zones)
    assert all(r > 50000 for r in analysis.resistance_zones)
    assert analysis.resistance_zones[-1] == pytest.approx(50000 + 2500 * 0.236)


def test_strength_and_confidence_stay_in_bounds():
    for pct in (-40.0, -5.0, 0.0, 0.3, 12.0, 80.0):
        for volume in (0.0, 1e6, 5e9, 5e11):
            for count in (0, 1000, 10_000_000):
                last = 100 * (1 + pct / 100)
                t = make_ticker(last=last, open_price=100, quote_volume=volume, pct=pct, count=count)
                analysis = analyze_ticker(t)
                assert 0 <= analysis.strength <= 100
                assert 0.1 <= analysis.confidence <= 1.0


def test_zero_price_does_not_raise():
    t = Ticker(symbol='DEADUSDT', last_price=0.0, open_price=0.0, high_price=0.0, low_price=0.0,
               quote_volume=0.0, price_change_percent=0.0)
    analysis = analyze_ticker(t)
    assert analysis.prediction == 0.0
    # no volume, no trades, zero volatility term only
    assert analysis.confidence == pytest.approx(0.3)


def test_bearish_momentum_institutional_order():
    t = make_ticker(last=90, open_price=100, high=101, low=89, quote_volume=7e9, pct=-10.0)
    analysis = analyze_ticker(t)
    assert analysis.trend == 'bearish'
    momentum = [o for o in analysis.institutional_orders if o.price == pytest.approx(95.0)]
    assert momentum and momentum[0].direction == 'down'
    assert momentum[0].confidence == pytest.approx(0.9)


def test_learning_stats_damp_confidence(engine, btc_payload):
    stats = AssetLearningStats(
        symbol='BTCUSDT', total_predictions=20, correct_predictions=10, accuracy_rate=0.5,
        average_confidence=0.6, indicator_weights=dict(DEFAULT_WEIGHTS), learning_level=0.5,
        last_updated=0,
    )
    engine.store.put('asset_stats', 'BTCUSDT', stats.to_dict())

    analysis = analyze_ticker(btc_payload, engine)

    assert analysis.base_confidence == pytest.approx(0.64)
    assert analysis.confidence == pytest.approx(0.64 * 0.75)
    assert analysis.learning_level == 0.5
    assert 'Intermediate Learning' in analysis.tags


def test_learning_lookup_failure_keeps_base_confidence(btc_payload):
    class BrokenEngine:
        def get_asset_stats(self, symbol):
            raise RuntimeError('store offline')

    analysis = analyze_ticker(btc_payload, BrokenEngine())
    assert analysis.confidence == pytest.approx(0.64)
    assert analysis.learning_level is None


def test_enrich_isolates_failing_symbol(monkeypatch):
    real = features.analyze_ticker

    def flaky(ticker, engine=None):
        if ticker.symbol == 'BADUSDT':
            raise ValueError('boom')
        return real(ticker, engine)

    monkeypatch.setattr(features, 'analyze_ticker', flaky)
    market = enrich_tickers([make_ticker('BADUSDT', last=5), make_ticker('ETHUSDT', last=3000)])

    assert [md.symbol for md in market] == ['BADUSDT', 'ETHUSDT']
    bad = market[0].analysis
    assert bad.strength == 0 and bad.confidence == 0 and bad.prediction == 5
    assert bad.tags == [] and bad.trend == 'bullish'
    assert market[1].analysis.confidence >= 0.1
