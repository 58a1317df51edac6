"""Typed records shared by the feature engine, radar, selectors and learning engine."""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidPayload


ANOMALY_TYPES = (
    'price_move',
    'volume_spike',
    'extreme_volatility',
    'funding_irregularity',
    'open_interest_spike',
)

_REQUIRED_TICKER_FIELDS = {
    'symbol': 'symbol',
    'lastPrice': 'last_price',
    'openPrice': 'open_price',
    'highPrice': 'high_price',
    'lowPrice': 'low_price',
    'quoteVolume': 'quote_volume',
    'priceChangePercent': 'price_change_percent',
}

_OPTIONAL_TICKER_FIELDS = {
    'priceChange': 'price_change',
    'weightedAvgPrice': 'weighted_avg_price',
    'lastQty': 'last_qty',
    'volume': 'volume',
    'openTime': 'open_time',
    'closeTime': 'close_time',
    'count': 'count',
}


def to_float(value, default: float = 0.0) -> float:
    """Parse a numeric-as-string field, returning `default` for non-finite or garbage."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _required_float(payload: Mapping[str, Any], key: str) -> float:
    if key not in payload or payload[key] is None:
        raise InvalidPayload(f'Ticker payload missing {key}')
    try:
        value = float(payload[key])
    except (TypeError, ValueError):
        raise InvalidPayload(f'Ticker field {key} is not numeric: {payload[key]!r}')
    if not math.isfinite(value):
        raise InvalidPayload(f'Ticker field {key} is not finite: {payload[key]!r}')
    return value


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last_price: float
    open_price: float
    high_price: float
    low_price: float
    quote_volume: float
    price_change_percent: float
    price_change: float = 0.0
    weighted_avg_price: float = 0.0
    last_qty: float = 0.0
    volume: float = 0.0
    open_time: int = 0
    close_time: int = 0
    count: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'Ticker':
        if not isinstance(payload, Mapping):
            raise InvalidPayload(f'Ticker payload must be an object, got {type(payload).__name__}')
        symbol = payload.get('symbol')
        if not symbol or not isinstance(symbol, str):
            raise InvalidPayload('Ticker payload missing symbol')

        values: Dict[str, Any] = {'symbol': symbol}
        for key, attr in _REQUIRED_TICKER_FIELDS.items():
            if key == 'symbol':
                continue
            values[attr] = _required_float(payload, key)
        for key, attr in _OPTIONAL_TICKER_FIELDS.items():
            value = to_float(payload.get(key, 0))
            values[attr] = int(value) if attr in ('open_time', 'close_time', 'count') else value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'priceChange': str(self.price_change),
            'priceChangePercent': str(self.price_change_percent),
            'weightedAvgPrice': str(self.weighted_avg_price),
            'lastPrice': str(self.last_price),
            'lastQty': str(self.last_qty),
            'openPrice': str(self.open_price),
            'highPrice': str(self.high_price),
            'lowPrice': str(self.low_price),
            'volume': str(self.volume),
            'quoteVolume': str(self.quote_volume),
            'openTime': self.open_time,
            'closeTime': self.close_time,
            'count': self.count,
        }


def as_ticker(obj) -> Ticker:
    if isinstance(obj, Ticker):
        return obj
    return Ticker.from_payload(obj)


@dataclass(frozen=True)
class ManipulationZone:
    price_min: float
    price_max: float
    confidence: float


@dataclass(frozen=True)
class InstitutionalOrder:
    direction: str  # 'up' | 'down'
    confidence: float
    price: float


@dataclass
class TechnicalAnalysis:
    trend: str
    strength: float
    confidence: float
    prediction: float
    base_confidence: float = 0.0
    support_zones: List[float] = field(default_factory=list)
    resistance_zones: List[float] = field(default_factory=list)
    manipulation_zones: List[ManipulationZone] = field(default_factory=list)
    institutional_orders: List[InstitutionalOrder] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    learning_level: Optional[float] = None
    optimized_confidence: Optional[float] = None

    @classmethod
    def neutral(cls, price: float) -> 'TechnicalAnalysis':
        """Fallback record used when enrichment of a symbol fails."""
        return cls(trend='bullish', strength=0.0, confidence=0.0, prediction=price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trend': self.trend,
            'strength': self.strength,
            'confidence': self.confidence,
            'prediction': self.prediction,
            'supportZones': list(self.support_zones),
            'resistanceZones': list(self.resistance_zones),
            'manipulationZones': [
                {'min': z.price_min, 'max': z.price_max, 'confidence': z.confidence}
                for z in self.manipulation_zones
            ],
            'institutionalOrders': [asdict(o) for o in self.institutional_orders],
            'tags': list(self.tags),
            'learningLevel': self.learning_level,
            'optimizedConfidence': self.optimized_confidence,
        }


@dataclass
class MarketData:
    """A 24h ticker together with its technical analysis."""

    ticker: Ticker
    analysis: Optional[TechnicalAnalysis] = None

    @property
    def symbol(self) -> str:
        return self.ticker.symbol

    def to_dict(self) -> Dict[str, Any]:
        out = self.ticker.to_dict()
        out['analysis'] = self.analysis.to_dict() if self.analysis else None
        return out


def as_market_data(obj) -> MarketData:
    """Accept a MarketData, or a ticker mapping with an optional 'analysis' entry."""
    if isinstance(obj, MarketData):
        return obj
    if isinstance(obj, Ticker):
        return MarketData(ticker=obj)
    payload = dict(obj)
    analysis = payload.pop('analysis', None)
    if analysis is not None and not isinstance(analysis, TechnicalAnalysis):
        raise InvalidPayload('analysis must be a TechnicalAnalysis record')
    return MarketData(ticker=Ticker.from_payload(payload), analysis=analysis)


@dataclass
class RadarAlert:
    symbol: str
    percent_change: float
    volume_ratio: float
    direction: str  # 'up' | 'down'
    confidence: float
    anomaly_score: float
    anomaly_types: List[str]
    reasons: List[str]
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'percentChange': self.percent_change,
            'volumeDelta': self.volume_ratio,
            'direction': self.direction,
            'confidence': self.confidence,
            'anomalyScore': self.anomaly_score,
            'anomalyTypes': list(self.anomaly_types),
            'reasons': list(self.reasons),
            'timestamp': self.timestamp,
        }


@dataclass
class Recommendation:
    symbol: str
    strength: float
    confidence: float
    timestamp: int


@dataclass
class OpportunityItem:
    symbol: str
    last_price: float
    price_change_percent: float
    strength: float
    confidence: float
    reasons: List[str]
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'lastPrice': self.last_price,
            'priceChangePercent': self.price_change_percent,
            'strength': self.strength,
            'confidence': self.confidence,
            'reasons': list(self.reasons),
            'score': self.score,
        }


@dataclass
class IndicatorValues:
    smc: float = 0.0
    volume_delta: float = 0.0
    liquidity: float = 0.0
    fvg: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'IndicatorValues':
        data = data or {}
        return cls(
            smc=to_float(data.get('smc')),
            volume_delta=to_float(data.get('volume_delta')),
            liquidity=to_float(data.get('liquidity')),
            fvg=to_float(data.get('fvg')),
        )


DEFAULT_WEIGHTS = {'smc': 0.25, 'volume_delta': 0.25, 'liquidity': 0.25, 'fvg': 0.25}


@dataclass
class PredictionRecord:
    symbol: str
    timestamp: int
    predicted_price: float
    confidence: float
    indicators: IndicatorValues = field(default_factory=IndicatorValues)
    actual_price: Optional[float] = None
    was_correct: Optional[bool] = None
    id: Optional[int] = None

    @property
    def reconciled(self) -> bool:
        return self.actual_price is not None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out['indicators'] = self.indicators.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PredictionRecord':
        actual = data.get('actual_price')
        was_correct = data.get('was_correct')
        return cls(
            id=data.get('id'),
            symbol=data['symbol'],
            timestamp=int(data['timestamp']),
            predicted_price=float(data['predicted_price']),
            confidence=float(data.get('confidence', 0.0)),
            indicators=IndicatorValues.from_dict(data.get('indicators')),
            actual_price=float(actual) if actual is not None else None,
            was_correct=bool(was_correct) if was_correct is not None else None,
        )


@dataclass
class AssetLearningStats:
    symbol: str
    total_predictions: int
    correct_predictions: int
    accuracy_rate: float
    average_confidence: float
    indicator_weights: Dict[str, float]
    learning_level: float
    last_updated: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AssetLearningStats':
        weights = data.get('indicator_weights') or DEFAULT_WEIGHTS
        return cls(
            symbol=data['symbol'],
            total_predictions=int(data.get('total_predictions', 0)),
            correct_predictions=int(data.get('correct_predictions', 0)),
            accuracy_rate=float(data.get('accuracy_rate', 0.0)),
            average_confidence=float(data.get('average_confidence', 0.0)),
            indicator_weights={k: float(weights.get(k, 0.0)) for k in DEFAULT_WEIGHTS},
            learning_level=float(data.get('learning_level', 0.0)),
            last_updated=int(data.get('last_updated', 0)),
        )


@dataclass
class LearningConfig:
    enabled: bool = True
    min_predictions_for_learning: int = 10
    learning_rate: float = 0.1
    confidence_threshold: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'LearningConfig':
        defaults = cls()
        data = data or {}
        return cls(
            enabled=bool(data.get('enabled', defaults.enabled)),
            min_predictions_for_learning=int(
                data.get('min_predictions_for_learning', defaults.min_predictions_for_learning)
            ),
            learning_rate=float(data.get('learning_rate', defaults.learning_rate)),
            confidence_threshold=float(data.get('confidence_threshold', defaults.confidence_threshold)),
        )


class LearningMaturity(Enum):
    COLD = 'cold'            # no stats row yet
    OBSERVING = 'observing'  # predictions reconciled, below the learning minimum
    LEARNING = 'learning'


@dataclass(frozen=True)
class FundingRateData:
    symbol: str
    funding_rate: float
    funding_time: int
    mark_price: float


@dataclass(frozen=True)
class OpenInterestData:
    symbol: str
    open_interest: float
    time: int


@dataclass
class DepthLevel:
    price: float
    size: float
    total: float
    is_wall: bool = False


@dataclass(frozen=True)
class DepthMetrics:
    mid_price: float
    spread: float
    imbalance: float


@dataclass
class OrderBookSnapshot:
    symbol: str
    bids: List[DepthLevel]
    asks: List[DepthLevel]
    metrics: Optional[DepthMetrics]
    is_empty: bool
    last_updated: int
    used_backend_fallback: bool = False


@dataclass
class InstitutionalSignalsSnapshot:
    symbol: str
    signals: List[InstitutionalOrder]
    last_updated: int
    used_backend_fallback: bool = False


@dataclass
class TradeRecommendation:
    direction: str  # 'Long' | 'Short'
    entry: float
    take_profit: float
    stop_loss: float
    rationale: List[str]
    confidence: float
    risk_reward_ratio: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': self.direction,
            'entry': self.entry,
            'takeProfit': self.take_profit,
            'stopLoss': self.stop_loss,
            'rationale': list(self.rationale),
            'confidence': self.confidence,
            'riskRewardRatio': self.risk_reward_ratio,
        }


@dataclass
class RecommendationError:
    reason: str
    missing_data: List[str] = field(default_factory=list)


@dataclass
class RecommendationResult:
    success: bool
    recommendation: Optional[TradeRecommendation] = None
    error: Optional[RecommendationError] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.success and self.recommendation is not None:
            return {'success': True, 'recommendation': self.recommendation.to_dict()}
        error = self.error or RecommendationError(reason='Unknown error')
        return {
            'success': False,
            'error': {'reason': error.reason, 'missingData': list(error.missing_data)},
        }


@dataclass
class DataStatus:
    is_stale: bool = False
    has_error: bool = False
    error_message: Optional[str] = None
    last_update: Optional[int] = None
    provider: str = 'Binance (direct)'
    is_fetching: bool = False
