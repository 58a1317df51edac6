from conftest import make_ticker
from market_radar.local_signals import AlertTracker, generate_radar_alerts, generate_recommendations
from market_radar.models import MarketData, TechnicalAnalysis
from market_radar.radar import RadarFilters, RadarState
from market_radar.sensitivity import get_sensitivity_policy

T0 = 1_700_000_000_000


def candidate(symbol, strength=60.0, confidence=0.6, trend='bullish', learning_level=None):
    analysis = TechnicalAnalysis(trend=trend, strength=strength, confidence=confidence,
                                 prediction=100.0, learning_level=learning_level)
    return MarketData(ticker=make_ticker(symbol), analysis=analysis)


def test_recommendations_filter_bullish_strong_confident():
    market = [
        candidate('AAAUSDT'),
        candidate('BBBUSDT', trend='bearish'),
        candidate('CCCUSDT', strength=50.0),
        candidate('DDDUSDT', confidence=0.4),
        MarketData(ticker=make_ticker('EEEUSDT')),
    ]
    recs = generate_recommendations(market, now_ms=T0)
    assert [r.symbol for r in recs] == ['AAAUSDT']
    assert recs[0].timestamp == T0


def test_recommendations_prefer_learned_assets_then_confidence_then_strength():
    market = [
        candidate('AAAUSDT', strength=90, confidence=0.9),
        candidate('BBBUSDT', strength=60, confidence=0.5, learning_level=0.8),
        candidate('CCCUSDT', strength=95, confidence=0.85),
        candidate('DDDUSDT', strength=70, confidence=0.6),
    ]
    recs = generate_recommendations(market, now_ms=T0)
    # A and C are within 0.1 on confidence, so strength decides
    assert [r.symbol for r in recs] == ['BBBUSDT', 'CCCUSDT', 'AAAUSDT', 'DDDUSDT']


def test_recommendations_capped_at_fifteen():
    market = [candidate(f'S{i:02d}USDT') for i in range(20)]
    recs = generate_recommendations(market, now_ms=T0)
    assert len(recs) == 15
    assert recs[0].symbol == 'S00USDT'


def test_generate_radar_alerts_applies_filters():
    market = [
        make_ticker('ADAUSDT', last=100.5, open_price=100, quote_volume=1e9, pct=0.5),
        make_ticker('DOTUSDT', last=100.5, open_price=100, quote_volume=1e9, pct=0.5),
        make_ticker('ETHUSDT', last=100.5, open_price=100, quote_volume=3e9, pct=0.5),
    ]
    policy = get_sensitivity_policy('balanced')
    assert [a.symbol for a in generate_radar_alerts(market, policy, RadarState(), now_ms=T0)] == ['ETHUSDT']

    only_funding = RadarFilters(enabled_anomaly_types={'funding_irregularity'})
    assert generate_radar_alerts(market, policy, RadarState(), filters=only_funding, now_ms=T0) == []


class Item:
    def __init__(self, symbol):
        self.symbol = symbol


def test_tracker_dedupes_within_a_minute():
    tracker = AlertTracker()
    items = [Item('BTCUSDT'), Item('ETHUSDT')]

    assert [i.symbol for i in tracker.filter_new(items, now_ms=T0)] == ['BTCUSDT', 'ETHUSDT']
    assert tracker.filter_new(items, now_ms=T0 + 1_000) == []
    assert len(tracker.filter_new(items, now_ms=T0 + 60_000)) == 2


def test_tracker_trims_history():
    tracker = AlertTracker(max_keys=4, keep_keys=2)
    for minute in range(5):
        assert tracker.is_new('BTCUSDT', minute * 60_000)
    assert len(tracker) == 2
    # oldest keys were forgotten, newest kept
    assert tracker.is_new('BTCUSDT', 0)
    assert not tracker.is_new('BTCUSDT', 4 * 60_000)
