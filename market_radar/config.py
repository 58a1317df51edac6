import copy
import logging
import os
from typing import Any, Dict

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'run_once': False,
    'intervals': {
        'tickers_sec': 30,
        'depth_sec': 10,
        'institutional_sec': 60,
    },
    'data_dir': 'data',
    'symbols': {
        'depth_symbol': 'BTCUSDT',
        'depth_venue': 'futures',
        'depth_step': 10,
        'institutional_symbol': 'BTCUSDT',
    },
    'learning': {
        'retention_days': 30,
        'report_every_cycles': 120,
    },
    'radar': {
        # preset used only until one is saved in preferences
        'default_preset': 'balanced',
    },
    'backend': {
        'url': None,
    },
    'notifications': {
        'telegram': True,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str = 'config.yaml') -> Dict[str, Any]:
    """Defaults, overlaid by config.yaml, overlaid by environment variables."""
    load_dotenv()
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if os.path.exists(path):
        with open(path, encoding='utf-8') as f:
            cfg = _merge(cfg, yaml.safe_load(f) or {})
    else:
        logger.warning(f'{path} not found, using built-in defaults')

    if os.getenv('MARKET_RADAR_DATA_DIR'):
        cfg['data_dir'] = os.getenv('MARKET_RADAR_DATA_DIR')
    if os.getenv('MARKET_RADAR_BACKEND_URL'):
        cfg['backend']['url'] = os.getenv('MARKET_RADAR_BACKEND_URL')
    return cfg
