import dataclasses
import unittest
from unittest.mock import MagicMock, patch

from market_radar.formatting import format_opportunities, format_radar_alert, format_recommendations, format_trade_plan
from market_radar.models import (
    OpportunityItem,
    RadarAlert,
    Recommendation,
    RecommendationError,
    RecommendationResult,
    TradeRecommendation,
)
from market_radar.notifier import NotificationState, TelegramNotifier, notify_alerts
from market_radar.sensitivity import get_sensitivity_policy

T0 = 1_700_000_000_000


def alert(symbol='ETHUSDT', confidence=0.8, direction='up'):
    return RadarAlert(
        symbol=symbol,
        percent_change=2.5,
        volume_ratio=2.0,
        direction=direction,
        confidence=confidence,
        anomaly_score=1.08,
        anomaly_types=['price_move', 'volume_spike'],
        reasons=['Price move +2.50% (corroborated, threshold 2.10%)', 'Volume 2.0x market median'],
        timestamp=T0,
    )


class TestAlertFormatting(unittest.TestCase):
    def test_alert_message_contents(self):
        message = format_radar_alert(alert(), favourite=True)
        self.assertTrue(message.startswith('🟢 <b>ETHUSDT</b> ⭐ | radar anomaly'))
        self.assertIn('🟢 Strong 80%', message)
        self.assertIn('Types: Price move, Volume spike', message)
        self.assertIn('• Volume 2.0x market median', message)

    def test_down_alert_uses_red_marker(self):
        message = format_radar_alert(alert(direction='down', confidence=0.35))
        self.assertTrue(message.startswith('🔴'))
        self.assertIn('🟠 Fair 35%', message)
        self.assertNotIn('⭐', message)

    def test_recommendations_and_opportunities(self):
        self.assertEqual(format_recommendations([]), '')
        recs = format_recommendations([Recommendation('BTCUSDT', 72.0, 0.64, T0)])
        self.assertIn('BTCUSDT', recs)
        self.assertIn('conf 64%', recs)

        item = OpportunityItem('ADAUSDT', 0.5, 1.0, 60.0, 0.6, ['High volume'], 100)
        self.assertEqual(format_opportunities({'scalping': [], 'smc': []}), '')
        self.assertIn('<b>SCALPING</b>: ADAUSDT (100)', format_opportunities({'scalping': [item]}))

    def test_trade_plan_success_and_failure(self):
        ok = RecommendationResult(success=True, recommendation=TradeRecommendation(
            direction='Long', entry=49508.82, take_profit=50373.5, stop_loss=49162.95,
            rationale=['Entry near support at $49410.00'], confidence=0.64, risk_reward_ratio=2.5,
        ))
        text = format_trade_plan('BTCUSDT', 'swing', ok)
        self.assertTrue(text.startswith('🟢 <b>BTCUSDT</b> | <b>Long</b> (swing)'))
        self.assertIn('Entry: <code>49 508.82</code>', text)
        self.assertIn('R/R 2.50 | conf 64%', text)

        failed = RecommendationResult(success=False, error=RecommendationError(
            reason='Asset not found in current market data', missing_data=['market data for XUSDT'],
        ))
        self.assertIn('(missing: market data for XUSDT)', format_trade_plan('XUSDT', 'swing', failed))


class TestTelegramNotifier(unittest.TestCase):
    @patch.dict('os.environ', {}, clear=True)
    def test_unconfigured_notifier_sends_nothing(self):
        notifier = TelegramNotifier()
        self.assertFalse(notifier.configured)
        self.assertIsNone(notifier.send_message('hi'))

    @patch('market_radar.notifier.requests.post')
    def test_send_message_returns_message_id(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200, json=lambda: {'ok': True, 'result': {'message_id': 42}})
        notifier = TelegramNotifier('token', 'chat')

        self.assertEqual(notifier.send_message('<b>hi</b>'), 42)
        url = mock_post.call_args[0][0]
        self.assertEqual(url, 'https://api.telegram.org/bottoken/sendMessage')
        self.assertEqual(mock_post.call_args[1]['json']['parse_mode'], 'HTML')

    @patch('market_radar.notifier.requests.post')
    def test_api_error_returns_none(self, mock_post):
        mock_post.return_value = MagicMock(
            status_code=200, json=lambda: {'ok': False, 'error_code': 400, 'description': 'chat not found'}
        )
        self.assertIsNone(TelegramNotifier('token', 'chat').send_message('hi'))

    @patch('market_radar.notifier.requests.post')
    def test_non_json_body_returns_none(self, mock_post):
        def bad_json():
            raise ValueError('Expecting value: line 1 column 1 (char 0)')

        mock_post.return_value = MagicMock(status_code=200, json=bad_json, text='<html>Bad Gateway</html>')
        with self.assertLogs('market_radar.notifier', level='ERROR') as logs:
            self.assertIsNone(TelegramNotifier('token', 'chat').send_message('hi'))
        self.assertIn('non-JSON', logs.output[0])


class RecordingNotifier:
    configured = True

    def __init__(self):
        self.messages = []

    def send_message(self, message):
        self.messages.append(message)
        return len(self.messages)


def test_notify_respects_confidence_floor_and_cooldown():
    notifier = RecordingNotifier()
    state = NotificationState()
    policy = get_sensitivity_policy('balanced')
    alerts = [alert('ETHUSDT', 0.8), alert('XRPUSDT', 0.5)]

    sent = notify_alerts(alerts, notifier, policy, state, now_ms=T0)
    assert [a.symbol for a in sent] == ['ETHUSDT']

    assert notify_alerts(alerts, notifier, policy, state, now_ms=T0 + 60_000) == []
    later = T0 + policy.notification_cooldown_ms
    assert [a.symbol for a in notify_alerts(alerts, notifier, policy, state, now_ms=later)] == ['ETHUSDT']
    assert len(notifier.messages) == 2


def test_notify_disabled_or_failed_send():
    policy = get_sensitivity_policy('balanced')
    assert notify_alerts([alert()], RecordingNotifier(), policy, NotificationState(), enabled=False) == []

    class FailingNotifier(RecordingNotifier):
        def send_message(self, message):
            return None

    state = NotificationState()
    assert notify_alerts([alert()], FailingNotifier(), policy, state, now_ms=T0) == []
    assert state.last_sent == {}


def test_notify_marks_favourites():
    notifier = RecordingNotifier()
    aggressive = dataclasses.replace(get_sensitivity_policy('aggressive'), min_confidence_for_notification=0.0)
    notify_alerts([alert('SOLUSDT')], notifier, aggressive, NotificationState(), favourites=['SOLUSDT'], now_ms=T0)
    assert '⭐' in notifier.messages[0]
