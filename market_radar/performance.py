"""
Brier Score & Reliability Curve over reconciled predictions, plus the
learning leaderboard. Evaluates how well recorded confidence matched outcomes.
"""
import time
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .calibration import LearningEngine

MIN_SAMPLES = 3
N_BINS = 10

PREDICTION_COLUMNS = ['id', 'symbol', 'timestamp', 'predicted_price', 'actual_price', 'confidence', 'was_correct']
LEADERBOARD_COLUMNS = ['symbol', 'learning_level', 'accuracy_rate', 'total_predictions',
                       'correct_predictions', 'average_confidence', 'last_updated']


def predictions_frame(engine: LearningEngine) -> pd.DataFrame:
    rows = [p.to_dict() for p in engine.get_predictions()]
    if not rows:
        return pd.DataFrame(columns=PREDICTION_COLUMNS)
    return pd.DataFrame(rows)[PREDICTION_COLUMNS]


def compute_brier_score_per_symbol(engine: LearningEngine, lookback_days: float = 1,
                                   now_ms: Optional[int] = None) -> Dict[str, dict]:
    """
    Compute Brier score and reliability curve (10 bins) per symbol.

    Args:
        engine: learning engine holding the prediction records
        lookback_days: Number of days to analyze (default: 1 for daily report)

    Returns:
        Dict of {symbol: {brier_score, reliability_bins, n_signals}}
    """
    df = predictions_frame(engine)
    if df.empty:
        return {}
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    cutoff = now_ms - lookback_days * 24 * 60 * 60 * 1000
    df = df[(df['timestamp'] >= cutoff) & df['was_correct'].notna()]

    results = {}
    for symbol, group in df.groupby('symbol'):
        if len(group) < MIN_SAMPLES:
            continue
        confidences = group['confidence'].to_numpy(dtype=float)
        outcomes = group['was_correct'].astype(bool).to_numpy(dtype=float)
        brier_score = float(np.mean((confidences - outcomes) ** 2))

        bin_edges = np.linspace(0, 1, N_BINS + 1)
        reliability_bins = []
        for i in range(N_BINS):
            bin_start, bin_end = bin_edges[i], bin_edges[i + 1]
            if i == N_BINS - 1:  # last bin includes upper edge
                mask = (confidences >= bin_start) & (confidences <= bin_end)
            else:
                mask = (confidences >= bin_start) & (confidences < bin_end)
            if not mask.any():
                continue
            reliability_bins.append({
                'bin_start': float(bin_start),
                'bin_end': float(bin_end),
                'mean_confidence': float(np.mean(confidences[mask])),
                'mean_outcome': float(np.mean(outcomes[mask])),
                'count': int(mask.sum()),
            })

        results[symbol] = {
            'brier_score': brier_score,
            'reliability_bins': reliability_bins,
            'n_signals': len(group),
        }
    return results


def format_brier_for_telegram(brier_results: Dict[str, dict]) -> str:
    if not brier_results:
        return ''

    lines = ['📊 <b>Confidence Calibration (24h)</b>']
    for symbol in sorted(brier_results):
        data = brier_results[symbol]
        brier = data['brier_score']
        # 0.05 / 0.10 / 0.15 bands: excellent, good, fair, poor
        if brier < 0.05:
            quality = '🟢'
        elif brier < 0.10:
            quality = '🟡'
        elif brier < 0.15:
            quality = '🟠'
        else:
            quality = '🔴'

        line = f"{quality} <code>{symbol:8}</code> Brier: <code>{brier:.3f}</code> ({data['n_signals']:2}sig)"
        significant = [b for b in data['reliability_bins'] if b['count'] > 2]
        if significant:
            worst = max(significant, key=lambda b: abs(b['mean_confidence'] - b['mean_outcome']))
            gap = worst['mean_confidence'] - worst['mean_outcome']
            line += f" Worst: {worst['mean_confidence']:.0%}→{worst['mean_outcome']:.0%} ({gap:+.0%})"
        lines.append(line)
    return '\n'.join(lines)


def learning_leaderboard(engine: LearningEngine, limit: int = 10) -> pd.DataFrame:
    """Assets ranked by learning level, most mature first."""
    rows = [s.to_dict() for s in engine.get_all_asset_stats()]
    if not rows:
        return pd.DataFrame(columns=LEADERBOARD_COLUMNS)
    df = pd.DataFrame(rows)[LEADERBOARD_COLUMNS]
    return df.sort_values(['learning_level', 'symbol'], ascending=[False, True]).head(limit).reset_index(drop=True)
