"""User preferences: sensitivity preset, favourites, alert toggles, radar filters."""

import json
import logging
from typing import List, Optional

from .models import ANOMALY_TYPES, to_float
from .radar import RadarFilters
from .sensitivity import DEFAULT_PRESET, normalize_preset
from .store import RecordStore

logger = logging.getLogger(__name__)

PREFERENCES = 'preferences'

SENSITIVITY_KEY = 'radar-sensitivity-preset'
FAVOURITES_KEY = 'favourites'
ALERTS_ENABLED_KEY = 'alerts-enabled'
FAVOURITES_PRIORITY_KEY = 'favourites-learning-priority'
FILTER_TYPES_KEY = 'radar-filter-enabled-types'
FILTER_MIN_SCORE_KEY = 'radar-filter-min-score'
FILTER_MIN_CONFIDENCE_KEY = 'radar-filter-min-confidence'
RESET_SUCCESS_KEY = 'reset-success'


class PreferenceStore:
    """String key/value preferences kept in their own record store."""

    def __init__(self, store: RecordStore):
        self.store = store

    def get(self, key: str) -> Optional[str]:
        row = self.store.get(PREFERENCES, key)
        return row.get('value') if row else None

    def set(self, key: str, value: str) -> None:
        self.store.put(PREFERENCES, key, {'key': key, 'value': value})

    def remove(self, key: str) -> None:
        self.store.delete(PREFERENCES, key)

    def clear(self) -> None:
        self.store.destroy()


def get_sensitivity_preset(prefs: PreferenceStore) -> str:
    return normalize_preset(prefs.get(SENSITIVITY_KEY))


def set_sensitivity_preset(prefs: PreferenceStore, preset: str) -> str:
    preset = normalize_preset(preset)
    prefs.set(SENSITIVITY_KEY, preset)
    return preset


def get_favourites(prefs: PreferenceStore) -> List[str]:
    raw = prefs.get(FAVOURITES_KEY)
    if not raw:
        return []
    try:
        symbols = json.loads(raw)
    except ValueError:
        logger.warning('Favourites preference is corrupt, ignoring it')
        return []
    return [s for s in symbols if isinstance(s, str)] if isinstance(symbols, list) else []


def set_favourites(prefs: PreferenceStore, symbols: List[str]) -> None:
    prefs.set(FAVOURITES_KEY, json.dumps(sorted(set(symbols))))


def toggle_favourite(prefs: PreferenceStore, symbol: str) -> bool:
    """Flip the symbol's favourite flag; returns the new state."""
    favourites = set(get_favourites(prefs))
    if symbol in favourites:
        favourites.discard(symbol)
        state = False
    else:
        favourites.add(symbol)
        state = True
    set_favourites(prefs, list(favourites))
    return state


def _get_flag(prefs: PreferenceStore, key: str, default: bool) -> bool:
    raw = prefs.get(key)
    if raw is None:
        return default
    return raw == 'true'


def alerts_enabled(prefs: PreferenceStore) -> bool:
    return _get_flag(prefs, ALERTS_ENABLED_KEY, True)


def set_alerts_enabled(prefs: PreferenceStore, enabled: bool) -> None:
    prefs.set(ALERTS_ENABLED_KEY, 'true' if enabled else 'false')


def favourites_priority(prefs: PreferenceStore) -> bool:
    return _get_flag(prefs, FAVOURITES_PRIORITY_KEY, False)


def set_favourites_priority(prefs: PreferenceStore, enabled: bool) -> None:
    prefs.set(FAVOURITES_PRIORITY_KEY, 'true' if enabled else 'false')


def load_radar_filters(prefs: PreferenceStore) -> RadarFilters:
    filters = RadarFilters()
    raw_types = prefs.get(FILTER_TYPES_KEY)
    if raw_types:
        try:
            types = json.loads(raw_types)
            if isinstance(types, list):
                filters.enabled_anomaly_types = {t for t in types if t in ANOMALY_TYPES}
        except ValueError:
            logger.warning('Radar filter types preference is corrupt, using defaults')
    filters.min_anomaly_score = max(0.0, to_float(prefs.get(FILTER_MIN_SCORE_KEY), 0.0))
    filters.min_confidence = max(0.0, to_float(prefs.get(FILTER_MIN_CONFIDENCE_KEY), 0.0))
    return filters


def save_radar_filters(prefs: PreferenceStore, filters: RadarFilters) -> None:
    ordered = [t for t in ANOMALY_TYPES if t in filters.enabled_anomaly_types]
    prefs.set(FILTER_TYPES_KEY, json.dumps(ordered))
    prefs.set(FILTER_MIN_SCORE_KEY, str(filters.min_anomaly_score))
    prefs.set(FILTER_MIN_CONFIDENCE_KEY, str(filters.min_confidence))


def reset_radar_filters(prefs: PreferenceStore) -> RadarFilters:
    for key in (FILTER_TYPES_KEY, FILTER_MIN_SCORE_KEY, FILTER_MIN_CONFIDENCE_KEY):
        prefs.remove(key)
    return RadarFilters()


def reset_from_scratch(engine, prefs: PreferenceStore) -> None:
    """Wipe the learning database and every preference, leaving only the success flag."""
    engine.reset()
    prefs.clear()
    prefs.set(RESET_SUCCESS_KEY, 'true')
    logger.info(f'Reset from scratch complete; sensitivity back to {DEFAULT_PRESET}')


def consume_reset_success(prefs: PreferenceStore) -> bool:
    """True once after a reset; the flag is cleared on read."""
    if prefs.get(RESET_SUCCESS_KEY) == 'true':
        prefs.remove(RESET_SUCCESS_KEY)
        return True
    return False
