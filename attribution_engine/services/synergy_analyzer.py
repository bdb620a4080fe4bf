"""
Cross-Channel Synergy Analyzer

Scores channel pairs that share revenue in the same converted journeys.
"""
from collections import defaultdict
from itertools import combinations
from typing import List, Optional

from attribution_engine.config import Settings, get_settings
from attribution_engine.models.domain import CustomerJourney, SynergyInsight
from attribution_engine.utils.helpers import safe_divide


def statistical_significance(journeys: int) -> float:
    """Confidence (60-95%) that grows with the number of shared journeys"""
    return min(95.0, max(60.0, 70.0 + journeys / 100 * 10))


def analyze_synergies(
    journeys: List[CustomerJourney],
    settings: Optional[Settings] = None
) -> List[SynergyInsight]:
    """
    Top channel pairs by synergy score

    A journey counts for a pair when both channels received revenue in it.
    Pairs are keyed by sorted channel ids, so (a, b) and (b, a) are the same pair.
    """
    settings = settings or get_settings()
    if not journeys:
        return []

    pair_journeys = defaultdict(int)
    pair_value = defaultdict(float)
    pair_cost = defaultdict(float)

    for journey in journeys:
        credited = sorted(c for c, v in journey.revenue_distribution.items() if v > 0)
        if len(credited) < 2:
            continue

        cost_by_channel = defaultdict(float)
        for tp in journey.touchpoints:
            cost_by_channel[tp.channel_id] += tp.cost

        for pair in combinations(credited, 2):
            pair_journeys[pair] += 1
            pair_value[pair] += journey.total_value
            pair_cost[pair] += cost_by_channel[pair[0]] + cost_by_channel[pair[1]]

    synergies = []
    for pair, count in pair_journeys.items():
        if count < settings.synergy_min_journeys:
            continue

        combined_roas = safe_divide(pair_value[pair], pair_cost[pair])
        share = count / len(journeys)
        score = combined_roas / max(1.0, share * settings.synergy_share_scale)
        significance = statistical_significance(count)

        if score > 3:
            strategy = f"Strong synergy detected: run coordinated campaigns ({significance:.0f}% confidence)"
        else:
            strategy = f"Moderate synergy: test sequential campaigns ({significance:.0f}% confidence)"

        synergies.append(SynergyInsight(
            channel_1=pair[0],
            channel_2=pair[1],
            synergy_score=score,
            combined_roas=combined_roas,
            journeys=count,
            recommended_strategy=strategy,
            statistical_significance=significance,
        ))

    synergies.sort(key=lambda s: (-s.synergy_score, s.channel_1, s.channel_2))
    return synergies[:settings.synergy_top_n]
