"""
Telegram notifications for radar alerts
"""
import logging
import os
import time
from typing import Dict, Iterable, List, Optional

import requests

from .formatting import format_radar_alert
from .models import RadarAlert
from .sensitivity import RadarSensitivityPolicy

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, bot_token: Optional[str] = None, chat_id: Optional[str] = None):
        self.bot_token = bot_token or os.getenv('TELEGRAM_BOT_TOKEN')
        self.chat_id = chat_id or os.getenv('TELEGRAM_CHAT_ID')

        if not self.bot_token:
            logger.warning('Telegram bot token is missing; messages will not be sent')
        if not self.chat_id:
            logger.warning('Telegram chat ID is missing; messages will not be sent')

        self.base_url = f'https://api.telegram.org/bot{self.bot_token}' if self.bot_token else None

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send_message(self, message: str, parse_mode: str = 'HTML') -> Optional[int]:
        """Send message to the chat. Returns message_id if successful, None otherwise."""
        if not self.configured:
            return None
        payload = {
            'chat_id': self.chat_id,
            'text': message,
            'parse_mode': parse_mode,
            'disable_web_page_preview': True,
        }
        try:
            response = requests.post(f'{self.base_url}/sendMessage', json=payload, timeout=10)
        except requests.exceptions.RequestException as e:
            logger.error(f'Telegram request failed: {e}')
            return None

        if response.status_code != 200:
            logger.error(f'Telegram HTTP error: {response.status_code} {response.text}')
            return None
        try:
            result = response.json()
        except ValueError as e:
            logger.error(f'Telegram returned a non-JSON body: {e} {response.text[:200]}')
            return None
        if not isinstance(result, dict):
            logger.error(f'Telegram returned an unexpected body: {result!r}')
            return None
        if not result.get('ok'):
            logger.error(f"Telegram API error: [{result.get('error_code', 'unknown')}] {result.get('description')}")
            return None
        return result.get('result', {}).get('message_id')


class NotificationState:
    """Last notification time per symbol, for cooldown enforcement."""

    def __init__(self):
        self.last_sent: Dict[str, int] = {}

    def cooling_down(self, symbol: str, now_ms: int, cooldown_ms: int) -> bool:
        last = self.last_sent.get(symbol)
        return last is not None and now_ms - last < cooldown_ms

    def mark(self, symbol: str, now_ms: int) -> None:
        self.last_sent[symbol] = now_ms


def notify_alerts(alerts: Iterable[RadarAlert], notifier: TelegramNotifier, policy: RadarSensitivityPolicy,
                  state: NotificationState, enabled: bool = True, favourites: Iterable[str] = (),
                  now_ms: Optional[int] = None) -> List[RadarAlert]:
    """Push alerts that clear the notification floor and are off cooldown; returns those sent."""
    if not enabled:
        return []
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    favs = set(favourites)
    sent = []
    for alert in alerts:
        if alert.confidence < policy.min_confidence_for_notification:
            continue
        if state.cooling_down(alert.symbol, now_ms, policy.notification_cooldown_ms):
            continue
        message_id = notifier.send_message(format_radar_alert(alert, favourite=alert.symbol in favs))
        if message_id is None and notifier.configured:
            continue
        state.mark(alert.symbol, now_ms)
        sent.append(alert)
    return sent
