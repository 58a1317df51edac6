"""
Market Radar Service Runner
Polls tickers, depth and institutional detectors on independent cadences.
"""

import argparse
import logging
import os
import time
from typing import Any, Dict

from . import preferences
from .calibration import LearningEngine
from .config import load_config
from .errors import MarketDataError
from .feeds import ProxyBackend, describe_error
from .formatting import format_opportunities, format_recommendations, format_trade_plan
from .notifier import TelegramNotifier
from .performance import compute_brier_score_per_symbol, format_brier_for_telegram, learning_leaderboard
from .pipeline import MarketRadar
from .store import JsonFileStore, SqliteStore

logger = logging.getLogger(__name__)

# Throttle noisy alerts when market data is unavailable
_FEED_ALERT_COOLDOWN = 30 * 60  # seconds


def build_radar(cfg: Dict[str, Any]) -> MarketRadar:
    data_dir = cfg['data_dir']
    engine = LearningEngine(SqliteStore(os.path.join(data_dir, 'learning.db')))
    prefs = preferences.PreferenceStore(JsonFileStore(os.path.join(data_dir, 'preferences.json')))
    backend_url = cfg['backend'].get('url')
    notifier = TelegramNotifier() if cfg['notifications'].get('telegram', True) else None
    return MarketRadar(
        engine,
        prefs,
        backend=ProxyBackend(backend_url) if backend_url else None,
        notifier=notifier,
        default_preset=cfg['radar'].get('default_preset', 'balanced'),
    )


class Scheduler:
    """Tracks when each independent job is next due."""

    def __init__(self, intervals: Dict[str, float]):
        self.intervals = intervals
        self.next_due = {name: 0.0 for name in intervals}

    def due(self, now: float):
        ready = [name for name, at in self.next_due.items() if now >= at]
        for name in ready:
            self.next_due[name] = now + self.intervals[name]
        return ready

    def sleep_seconds(self, now: float) -> float:
        return max(0.0, min(self.next_due.values()) - now)


class RadarService:
    def __init__(self, cfg: Dict[str, Any], radar: MarketRadar):
        self.cfg = cfg
        self.radar = radar
        self.cycles = 0
        self._last_feed_alert = 0.0

    def run_tickers(self) -> None:
        try:
            result = self.radar.refresh()
        except MarketDataError as e:
            logger.error(describe_error(e))
            self._alert_feed_down(str(e))
            return
        self.cycles += 1
        for alert in result.new_alerts:
            logger.info(f'[RADAR] {alert.symbol} {",".join(alert.anomaly_types)} conf={alert.confidence:.2f}')
        if result.new_recommendations:
            logger.info('\n' + format_recommendations(result.new_recommendations))
        opportunities = format_opportunities(result.opportunities)
        if opportunities:
            logger.info('\n' + opportunities)

        every = self.cfg['learning'].get('report_every_cycles', 0)
        if every and self.cycles % every == 0:
            self.report_learning()

    def run_depth(self) -> None:
        symbols = self.cfg['symbols']
        try:
            snapshot = self.radar.order_book(
                symbols['depth_symbol'], venue=symbols['depth_venue'], step=symbols.get('depth_step') or None
            )
        except MarketDataError as e:
            logger.warning(f'Depth unavailable: {describe_error(e)}')
            return
        if snapshot.metrics:
            m = snapshot.metrics
            walls = sum(1 for level in snapshot.bids + snapshot.asks if level.is_wall)
            logger.info(
                f'[DEPTH] {snapshot.symbol} mid={m.mid_price:.2f} spread={m.spread:.2f} '
                f'imbalance={m.imbalance:+.2f} walls={walls}'
            )

    def run_institutional(self) -> None:
        snapshots = self.radar.institutional_orders(self.cfg['symbols']['institutional_symbol'])
        for venue, snapshot in snapshots.items():
            for signal in snapshot.signals:
                logger.info(
                    f'[INSTITUTIONAL] {snapshot.symbol} {venue} {signal.direction} '
                    f'conf={signal.confidence:.2f} @ {signal.price:.2f}'
                    + (' (backend)' if snapshot.used_backend_fallback else '')
                )

    def report_learning(self) -> None:
        board = learning_leaderboard(self.radar.engine)
        if not board.empty:
            logger.info('\n' + board.to_string(index=False))
        brier = format_brier_for_telegram(compute_brier_score_per_symbol(self.radar.engine))
        if brier:
            logger.info('\n' + brier)
            if self.radar.notifier is not None:
                self.radar.notifier.send_message(brier)

    def _alert_feed_down(self, message: str) -> None:
        now = time.time()
        if now - self._last_feed_alert < _FEED_ALERT_COOLDOWN or self.radar.notifier is None:
            return
        self._last_feed_alert = now
        self.radar.notifier.send_message(
            '⚠️ <b>Data feed unavailable</b>\n'
            'Radar is paused because market data could not be reached.\n'
            f'Last error: {message}'
        )

    def run_once(self) -> None:
        self.run_tickers()
        self.run_depth()
        self.run_institutional()

    def run_forever(self) -> None:
        intervals = self.cfg['intervals']
        scheduler = Scheduler({
            'tickers': intervals['tickers_sec'],
            'depth': intervals['depth_sec'],
            'institutional': intervals['institutional_sec'],
        })
        jobs = {'tickers': self.run_tickers, 'depth': self.run_depth, 'institutional': self.run_institutional}
        while True:
            for name in scheduler.due(time.time()):
                try:
                    jobs[name]()
                except Exception as e:
                    logger.error(f'Scheduled {name} job failed: {e}', exc_info=True)
            time.sleep(scheduler.sleep_seconds(time.time()))


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description='Adaptive market radar')
    parser.add_argument('--config', default='config.yaml')
    parser.add_argument('--once', action='store_true', help='run a single cycle and exit')
    parser.add_argument('--plan', nargs=2, metavar=('SYMBOL', 'MODALITY'), help='print a trade plan after one cycle')
    parser.add_argument('--preset', choices=['conservative', 'balanced', 'aggressive'], help='save a sensitivity preset')
    parser.add_argument('--reset', action='store_true', help='wipe learning data and preferences')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    cfg = load_config(args.config)
    radar = build_radar(cfg)

    if args.reset:
        radar.reset_from_scratch()
        logger.info('Learning data and preferences wiped')
        return
    if args.preset:
        preferences.set_sensitivity_preset(radar.prefs, args.preset)
        logger.info(f'Sensitivity preset saved: {args.preset}')

    radar.startup(cfg['learning'].get('retention_days', 30))
    service = RadarService(cfg, radar)

    if args.plan:
        service.run_tickers()
        symbol, modality = args.plan
        print(format_trade_plan(symbol.upper(), modality, radar.trade_plan(symbol, modality)))
        return
    if args.once or cfg.get('run_once', False):
        service.run_once()
        return

    logger.info('Market radar started')
    service.run_forever()


if __name__ == '__main__':
    main()
