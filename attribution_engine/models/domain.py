"""
Attribution domain values

Immutable records passed between the store, the models, the aggregators
and the report builder. None of these are persisted directly.
"""
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from attribution_engine.exceptions import ValidationError
from attribution_engine.utils.helpers import to_naive_utc

TOUCH_TYPES = ('impression', 'click', 'engagement', 'view', 'visit')
PLATFORMS = ('meta', 'google', 'tiktok', 'email', 'organic', 'direct', 'referral', 'other')
DEVICE_TYPES = ('mobile', 'desktop', 'tablet')


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start is None or self.end is None:
            raise ValidationError("Date range needs both start and end")
        # Touchpoints are stored as naive UTC
        object.__setattr__(self, 'start', to_naive_utc(self.start))
        object.__setattr__(self, 'end', to_naive_utc(self.end))
        if self.start >= self.end:
            raise ValidationError(f"Invalid date range: start {self.start} is not before end {self.end}")

    def contains(self, ts: Optional[datetime]) -> bool:
        return ts is not None and self.start <= ts <= self.end


@dataclass(frozen=True)
class TouchPoint:
    """Single recorded marketing exposure tied to a customer and channel"""
    id: str
    timestamp: datetime
    channel_id: str
    channel_name: str
    platform: str
    touch_type: str
    customer_id: str
    is_conversion: bool = False
    touch_value: float = 0.0
    cost: float = 0.0
    position: int = 0  # 1..N once placed in a journey
    customer_segment: Optional[str] = None
    session_id: Optional[str] = None
    device_type: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def at_position(self, position: int) -> "TouchPoint":
        return replace(self, position=position)


def distribute_revenue(weights: Mapping[str, float], total_value: float) -> Dict[str, float]:
    """Split total_value by weights so the parts add back up to total_value exactly"""
    if not weights:
        return {}
    distribution = {channel: total_value * w for channel, w in weights.items()}
    residual = total_value - sum(distribution.values())
    if residual:
        top = max(weights, key=lambda c: (weights[c], c))
        distribution[top] += residual
    return distribution


@dataclass(frozen=True)
class CustomerJourney:
    """
    Ordered touchpoints of one customer up to conversion or window close

    Built by the touchpoint store; weighting returns a new journey with
    attribution_weights and revenue_distribution filled in.
    """
    customer_id: str
    touchpoints: Tuple[TouchPoint, ...]
    customer_segment: Optional[str] = None
    attribution_weights: Mapping[str, float] = field(default_factory=dict)
    revenue_distribution: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if not self.touchpoints:
            raise ValidationError(f"Journey for {self.customer_id} has no touchpoints")

    @property
    def journey_id(self) -> str:
        return f"{self.customer_id}:{self.touchpoints[0].id}"

    @property
    def first_touch(self) -> TouchPoint:
        return self.touchpoints[0]

    @property
    def last_touch(self) -> TouchPoint:
        return self.touchpoints[-1]

    @property
    def assisting_touches(self) -> Tuple[TouchPoint, ...]:
        return self.touchpoints[1:-1]

    @property
    def conversion_touchpoints(self) -> Tuple[TouchPoint, ...]:
        return tuple(tp for tp in self.touchpoints if tp.is_conversion)

    @property
    def touchpoint_count(self) -> int:
        return len(self.touchpoints)

    @property
    def converted(self) -> bool:
        return any(tp.is_conversion for tp in self.touchpoints)

    @property
    def total_value(self) -> float:
        return sum(tp.touch_value for tp in self.conversion_touchpoints)

    @property
    def journey_start(self) -> datetime:
        return self.first_touch.timestamp

    @property
    def conversion_date(self) -> Optional[datetime]:
        conversions = self.conversion_touchpoints
        return conversions[-1].timestamp if conversions else None

    @property
    def duration_hours(self) -> float:
        return (self.last_touch.timestamp - self.first_touch.timestamp).total_seconds() / 3600

    @property
    def channels(self) -> Tuple[str, ...]:
        """Distinct channels in order of first appearance"""
        return tuple(dict.fromkeys(tp.channel_id for tp in self.touchpoints))

    @property
    def journey_path(self) -> str:
        return " -> ".join(tp.channel_id for tp in self.touchpoints)

    def with_attribution(self, weights: Mapping[str, float]) -> "CustomerJourney":
        return replace(
            self,
            attribution_weights=dict(weights),
            revenue_distribution=distribute_revenue(weights, self.total_value),
        )


@dataclass(frozen=True)
class AttributionInsight:
    """Per-channel metrics for one report"""
    channel_id: str
    channel_name: str
    platform: str
    total_touchpoints: int
    total_revenue: float  # Value of converted journeys the channel touched
    attributed_revenue: float
    total_cost: float
    attribution_percentage: float
    roas: float
    cost_per_acquisition: float
    conversion_influence: float
    assisting_touch_rate: float
    first_touch_contribution: float
    middle_touch_contribution: float
    last_touch_contribution: float
    criticality_score: float
    recommended_budget_delta: float


@dataclass(frozen=True)
class OptimizationRecommendation:
    channel_id: str
    recommendation: str
    expected_impact: float
    priority: str  # high, medium, low
    implementation_effort: str  # easy, medium, hard
    confidence_score: float
    estimated_revenue_lift: float


@dataclass(frozen=True)
class SynergyInsight:
    """Unordered channel pair; channel_1 < channel_2"""
    channel_1: str
    channel_2: str
    synergy_score: float
    combined_roas: float
    journeys: int
    recommended_strategy: str
    statistical_significance: float


@dataclass(frozen=True)
class ArmMetrics:
    """Running metrics for one experiment arm"""
    accuracy: float = 0.0
    revenue: float = 0.0
    conversions: int = 0
    journeys: int = 0


@dataclass(frozen=True)
class ModelComparison:
    models: Tuple[Dict[str, Any], ...]
    champion: str
    challenger: Optional[str]
    experiment_running: bool


@dataclass(frozen=True)
class AttributionReport:
    """Top-level immutable output for a requested time window"""
    report_id: str
    generated_at: datetime
    date_range: DateRange
    model_id: str
    model_version: str
    total_journeys: int
    total_conversions: int
    total_revenue: float
    avg_journey_length: float
    avg_time_to_conversion: float  # Hours
    model_accuracy: float
    channel_insights: Tuple[AttributionInsight, ...]
    top_performing_journeys: Tuple[CustomerJourney, ...]
    optimization_recommendations: Tuple[OptimizationRecommendation, ...]
    cross_channel_synergies: Tuple[SynergyInsight, ...]
    alerts: Tuple[Dict[str, Any], ...]
    experiments: Tuple[Dict[str, Any], ...]
    model_comparison: ModelComparison
    advanced_metrics: Mapping[str, float]
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['top_performing_journeys'] = [
            _journey_summary(j) for j in self.top_performing_journeys
        ]
        return data


def _journey_summary(journey: CustomerJourney) -> Dict[str, Any]:
    return {
        'journey_id': journey.journey_id,
        'customer_id': journey.customer_id,
        'journey_path': journey.journey_path,
        'touchpoint_count': journey.touchpoint_count,
        'total_value': journey.total_value,
        'duration_hours': round(journey.duration_hours, 2),
        'conversion_date': journey.conversion_date,
        'attribution_weights': dict(journey.attribution_weights),
        'revenue_distribution': dict(journey.revenue_distribution),
    }


def journey_to_dict(journey: CustomerJourney) -> Dict[str, Any]:
    """Journey summary plus its touchpoints, for API responses"""
    data = _journey_summary(journey)
    data['touchpoints'] = [asdict(tp) for tp in journey.touchpoints]
    return data


def summarize_journeys(journeys: List[CustomerJourney]) -> Dict[str, float]:
    """Averages shown at the top of a report"""
    converted = [j for j in journeys if j.converted]
    avg_length = sum(j.touchpoint_count for j in journeys) / len(journeys) if journeys else 0.0
    avg_time = sum(j.duration_hours for j in converted) / len(converted) if converted else 0.0
    return {
        'avg_journey_length': avg_length,
        'avg_time_to_conversion': avg_time,
    }
