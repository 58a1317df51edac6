import unittest

import pytest

from conftest import BTC_PAYLOAD, make_ticker
from market_radar.features import analyze_ticker, enrich_tickers
from market_radar.models import MarketData, Ticker
from market_radar.trade_plan import (
    INSUFFICIENT_DATA,
    MODALITY_PARAMS,
    compute_trade_recommendation,
    recommend_for_symbol,
)


def btc_market_data():
    return enrich_tickers([BTC_PAYLOAD])[0]


class TestSwingLongPlan(unittest.TestCase):
    def setUp(self):
        self.result = compute_trade_recommendation('swing', btc_market_data())
        self.plan = self.result.recommendation

    def test_success_and_direction(self):
        self.assertTrue(self.result.success)
        self.assertEqual(self.plan.direction, 'Long')

    def test_entry_stop_and_target(self):
        support = 50000 - 2500 * 0.236
        self.assertAlmostEqual(self.plan.entry, support * 1.002, places=6)
        self.assertAlmostEqual(self.plan.stop_loss, support * 0.995, places=6)
        risk = self.plan.entry - self.plan.stop_loss
        self.assertAlmostEqual(self.plan.take_profit, self.plan.entry + 2.5 * risk, places=6)
        self.assertAlmostEqual(self.plan.risk_reward_ratio, 2.5, places=6)

    def test_levels_ordered_for_long(self):
        self.assertLess(self.plan.stop_loss, self.plan.entry)
        self.assertLess(self.plan.entry, self.plan.take_profit)

    def test_rationale(self):
        self.assertIn('Entry near support at $49410.00', self.plan.rationale)
        self.assertIn('Manipulation zone detected - exercise caution', self.plan.rationale)
        self.assertEqual(self.plan.rationale[-2:], ['Institutional Volume', 'High Volatility'])
        self.assertAlmostEqual(self.plan.confidence, 0.64)


def test_short_plan_levels_are_mirrored():
    t = make_ticker('ETHUSDT', last=97, open_price=100, high=101, low=96, quote_volume=1e9, pct=-3.0)
    result = compute_trade_recommendation('swing', enrich_tickers([t])[0])
    plan = result.recommendation

    assert result.success
    assert plan.direction == 'Short'
    assert plan.take_profit < plan.entry < plan.stop_loss
    assert plan.entry == pytest.approx((97 + 5 * 0.236) * 0.998)
    assert 'TP before support at $95.82' in plan.rationale


def test_institutional_order_overrides_bearish_trend():
    t = make_ticker('SOLUSDT', last=100, open_price=99, quote_volume=9e9, pct=-1.0)
    md = enrich_tickers([t])[0]
    assert md.analysis.trend == 'bearish'

    plan = compute_trade_recommendation('scalping', md).recommendation
    assert plan.direction == 'Long'
    assert 'Institutional flow aligned (75% confidence)' in plan.rationale


@pytest.mark.parametrize('modality', sorted(MODALITY_PARAMS))
def test_every_modality_yields_consistent_levels(modality):
    plan = compute_trade_recommendation(modality, btc_market_data()).recommendation
    assert plan.stop_loss < plan.entry < plan.take_profit
    assert plan.risk_reward_ratio > 0


def test_unknown_modality_uses_swing_parameters():
    md = btc_market_data()
    unknown = compute_trade_recommendation('position', md).recommendation
    swing = compute_trade_recommendation('swing', md).recommendation
    assert unknown.take_profit == pytest.approx(swing.take_profit)


def test_missing_price_and_analysis_reported():
    result = compute_trade_recommendation('swing', {'symbol': 'XUSDT', 'lastPrice': '0'})
    assert not result.success
    assert result.error.reason == INSUFFICIENT_DATA
    assert result.error.missing_data == ['current price', 'technical analysis']
    assert result.to_dict() == {
        'success': False,
        'error': {'reason': INSUFFICIENT_DATA, 'missingData': ['current price', 'technical analysis']},
    }


def test_missing_analysis_only():
    md = MarketData(ticker=Ticker.from_payload(BTC_PAYLOAD))
    result = compute_trade_recommendation('swing', md)
    assert result.error.missing_data == ['technical analysis']


def test_mapping_with_analysis_is_accepted():
    payload = dict(BTC_PAYLOAD, analysis=analyze_ticker(BTC_PAYLOAD))
    result = compute_trade_recommendation('swing', payload)
    assert result.success
    assert result.to_dict()['recommendation']['direction'] == 'Long'


def test_recommend_for_unknown_symbol():
    result = recommend_for_symbol('swing', 'NOPEUSDT', [btc_market_data()])
    assert result.to_dict() == {
        'success': False,
        'error': {
            'reason': 'Asset not found in current market data',
            'missingData': ['market data for NOPEUSDT'],
        },
    }
    assert recommend_for_symbol('swing', 'BTCUSDT', [btc_market_data()]).success


def test_zero_price_with_analysis_reports_only_price():
    payload = dict(BTC_PAYLOAD, lastPrice='0', analysis=analyze_ticker(BTC_PAYLOAD))
    result = compute_trade_recommendation('scalping', payload)
    assert result.to_dict() == {
        'success': False,
        'error': {'reason': INSUFFICIENT_DATA, 'missingData': ['current price']},
    }
