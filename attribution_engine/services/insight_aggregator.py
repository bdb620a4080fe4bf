"""
Channel Insight Aggregator

Turns weighted journeys into per-channel metrics and budget
recommendations. Journeys are folded into an InsightAccumulator; accumulators
built over separate chunks merge in any order to the same totals, so the
report builder can fan weighting out across workers.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from attribution_engine.config import Settings, get_settings
from attribution_engine.models.domain import (
    AttributionInsight, CustomerJourney, OptimizationRecommendation
)
from attribution_engine.utils.helpers import safe_divide


@dataclass
class ChannelStats:
    channel_name: str = ''
    platform: str = 'other'
    touchpoints: int = 0
    total_cost: float = 0.0
    influenced_revenue: float = 0.0
    attributed_revenue: float = 0.0
    credited_conversions: int = 0
    first_touches: int = 0
    middle_touches: int = 0
    last_touches: int = 0
    assisting_touches: int = 0

    def merge(self, other: "ChannelStats"):
        # min() keeps the label independent of merge order
        if other.channel_name and (not self.channel_name or other.channel_name < self.channel_name):
            self.channel_name = other.channel_name
        if self.platform == 'other':
            self.platform = other.platform
        self.touchpoints += other.touchpoints
        self.total_cost += other.total_cost
        self.influenced_revenue += other.influenced_revenue
        self.attributed_revenue += other.attributed_revenue
        self.credited_conversions += other.credited_conversions
        self.first_touches += other.first_touches
        self.middle_touches += other.middle_touches
        self.last_touches += other.last_touches
        self.assisting_touches += other.assisting_touches


@dataclass
class InsightAccumulator:
    """Running per-channel totals for a set of weighted journeys"""
    channels: Dict[str, ChannelStats] = field(default_factory=lambda: defaultdict(ChannelStats))
    journeys: int = 0
    conversions: int = 0
    total_value: float = 0.0

    def add(self, journey: CustomerJourney):
        self.journeys += 1
        self.total_value += journey.total_value
        converted = journey.converted
        if converted:
            self.conversions += 1

        count = journey.touchpoint_count
        for tp in journey.touchpoints:
            stats = self.channels[tp.channel_id]
            if not stats.channel_name or tp.channel_name < stats.channel_name:
                stats.channel_name = tp.channel_name
            if stats.platform == 'other':
                stats.platform = tp.platform
            stats.touchpoints += 1
            stats.total_cost += tp.cost
            if tp.position == 1:
                stats.first_touches += 1
            if tp.position == count:
                stats.last_touches += 1
            if 1 < tp.position < count:
                stats.middle_touches += 1
            if converted and not tp.is_conversion:
                stats.assisting_touches += 1

        for channel in journey.channels:
            stats = self.channels[channel]
            attributed = journey.revenue_distribution.get(channel, 0.0)
            stats.attributed_revenue += attributed
            if converted:
                stats.influenced_revenue += journey.total_value
                if attributed > 0:
                    stats.credited_conversions += 1

    def merge(self, other: "InsightAccumulator") -> "InsightAccumulator":
        self.journeys += other.journeys
        self.conversions += other.conversions
        self.total_value += other.total_value
        for channel, stats in other.channels.items():
            self.channels[channel].merge(stats)
        return self

    @classmethod
    def from_journeys(cls, journeys: Iterable[CustomerJourney]) -> "InsightAccumulator":
        acc = cls()
        for journey in journeys:
            acc.add(journey)
        return acc


def criticality_score(roas: float, attributed_revenue: float, assist_rate: float, settings: Settings) -> float:
    return (
        roas * settings.criticality_roas_weight
        + attributed_revenue / settings.criticality_revenue_scale * settings.criticality_revenue_weight
        + assist_rate * settings.criticality_assist_weight
    )


def budget_delta(roas: float, total_cost: float, settings: Settings) -> float:
    """Suggested spend change for a channel"""
    if roas > 4:
        return total_cost * settings.budget_step
    if roas < 2:
        return -total_cost * settings.budget_step
    return 0.0


def build_insights(acc: InsightAccumulator, settings: Optional[Settings] = None) -> List[AttributionInsight]:
    """Per-channel insights, most critical channel first"""
    settings = settings or get_settings()
    insights = []

    for channel_id, stats in acc.channels.items():
        touches = max(stats.touchpoints, 1)
        roas = safe_divide(stats.attributed_revenue, stats.total_cost)
        assist_rate = stats.assisting_touches / touches

        insights.append(AttributionInsight(
            channel_id=channel_id,
            channel_name=stats.channel_name or channel_id,
            platform=stats.platform,
            total_touchpoints=stats.touchpoints,
            total_revenue=stats.influenced_revenue,
            attributed_revenue=stats.attributed_revenue,
            total_cost=stats.total_cost,
            attribution_percentage=safe_divide(stats.attributed_revenue, acc.total_value) * 100,
            roas=roas,
            cost_per_acquisition=safe_divide(stats.total_cost, stats.credited_conversions),
            conversion_influence=stats.last_touches / touches,
            assisting_touch_rate=assist_rate,
            first_touch_contribution=stats.first_touches / touches,
            middle_touch_contribution=stats.middle_touches / touches,
            last_touch_contribution=stats.last_touches / touches,
            criticality_score=criticality_score(roas, stats.attributed_revenue, assist_rate, settings),
            recommended_budget_delta=budget_delta(roas, stats.total_cost, settings),
        ))

    insights.sort(key=lambda i: (-i.criticality_score, i.channel_id))
    return insights


def aggregate(journeys: Iterable[CustomerJourney], settings: Optional[Settings] = None) -> List[AttributionInsight]:
    """Insights for already-weighted journeys"""
    return build_insights(InsightAccumulator.from_journeys(journeys), settings)


def recommend(
    insights: List[AttributionInsight],
    settings: Optional[Settings] = None
) -> List[OptimizationRecommendation]:
    """
    Budget recommendations from channel insights

    Ranked by confidence x estimated revenue lift.
    """
    settings = settings or get_settings()
    recommendations = []

    for insight in insights:
        # Share of attributed revenue considered movable budget
        allocation = insight.attributed_revenue * 0.3

        if insight.roas > 4 and insight.criticality_score > 2:
            recommendations.append(OptimizationRecommendation(
                channel_id=insight.channel_id,
                recommendation=f"Increase budget for {insight.channel_name}: excellent ROAS {insight.roas:.2f}x",
                expected_impact=insight.roas * 0.2,
                priority='high',
                implementation_effort='easy',
                confidence_score=0.85,
                estimated_revenue_lift=allocation * insight.roas * 0.3,
            ))
        elif insight.roas < 2 and insight.criticality_score < 1:
            recommendations.append(OptimizationRecommendation(
                channel_id=insight.channel_id,
                recommendation=f"Optimize or reduce budget for {insight.channel_name}: low ROAS {insight.roas:.2f}x",
                expected_impact=insight.roas * 0.5,
                priority='medium',
                implementation_effort='medium',
                confidence_score=0.70,
                estimated_revenue_lift=allocation * 0.1,
            ))

        if insight.assisting_touch_rate > 0.7:
            recommendations.append(OptimizationRecommendation(
                channel_id=insight.channel_id,
                recommendation=(
                    f"{insight.channel_name} drives assisting touches: consider increasing awareness budget"
                ),
                expected_impact=insight.assisting_touch_rate * 0.3,
                priority='medium',
                implementation_effort='easy',
                confidence_score=0.775,
                estimated_revenue_lift=insight.assisting_touch_rate * allocation,
            ))

    recommendations.sort(key=lambda r: (-(r.confidence_score * r.estimated_revenue_lift), r.channel_id))
    return recommendations[:settings.recommendation_top_n]
