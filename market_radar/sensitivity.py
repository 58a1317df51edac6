from dataclasses import dataclass
from typing import Dict, Optional

DEFAULT_PRESET = 'balanced'


@dataclass(frozen=True)
class RadarSensitivityPolicy:
    price_change_threshold: float       # percent
    volume_ratio_threshold: float       # multiple of median quote volume
    volatility_threshold: float         # (high-low)/open, percent
    require_corroboration: bool
    corroboration_multiplier: float
    min_confidence_for_alert: float
    min_confidence_for_notification: float
    notification_cooldown_ms: int


SENSITIVITY_PRESETS: Dict[str, RadarSensitivityPolicy] = {
    'conservative': RadarSensitivityPolicy(
        price_change_threshold=4.0,
        volume_ratio_threshold=2.0,
        volatility_threshold=10.0,
        require_corroboration=True,
        corroboration_multiplier=0.6,
        min_confidence_for_alert=0.5,
        min_confidence_for_notification=0.7,
        notification_cooldown_ms=300000,
    ),
    'balanced': RadarSensitivityPolicy(
        price_change_threshold=3.0,
        volume_ratio_threshold=1.5,
        volatility_threshold=8.0,
        require_corroboration=True,
        corroboration_multiplier=0.7,
        min_confidence_for_alert=0.3,
        min_confidence_for_notification=0.6,
        notification_cooldown_ms=180000,
    ),
    'aggressive': RadarSensitivityPolicy(
        price_change_threshold=2.0,
        volume_ratio_threshold=1.3,
        volatility_threshold=6.0,
        require_corroboration=False,
        corroboration_multiplier=0.8,
        min_confidence_for_alert=0.2,
        min_confidence_for_notification=0.5,
        notification_cooldown_ms=120000,
    ),
}


def normalize_preset(preset: Optional[str]) -> str:
    return preset if preset in SENSITIVITY_PRESETS else DEFAULT_PRESET


def get_sensitivity_policy(preset: Optional[str] = None) -> RadarSensitivityPolicy:
    """Policy for a preset key; unknown keys get the balanced policy."""
    return SENSITIVITY_PRESETS[normalize_preset(preset)]
