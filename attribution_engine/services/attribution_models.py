"""
Attribution Algorithms

Closed set of interchangeable weighting algorithms. Each one maps a
journey to channel -> weight (summing to 1.0) with no side effects:

    algorithm.weight(journey, fitted) -> {channel_id: weight}

Algorithms that learn from a journey population (Markov chain, Shapley,
ensembles of them) expose fit(journeys) -> fitted parameters; the result is
passed back into weight() so the same inputs always give the same output.
"""
import math
from collections import defaultdict
from itertools import combinations
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional

import numpy as np

from attribution_engine.config import get_settings
from attribution_engine.exceptions import PartialComputationError, ValidationError
from attribution_engine.models.domain import CustomerJourney, TouchPoint

settings = get_settings()

# Relative effectiveness per platform, applied on top of positional weights
PLATFORM_EFFECTIVENESS = {
    'meta': 1.2,
    'google': 1.3,
    'tiktok': 1.1,
    'email': 1.4,
    'organic': 1.5,
    'direct': 1.6,
    'referral': 1.1,
}

# Historical performance score per platform (data-driven model)
PLATFORM_PERFORMANCE = {
    'meta': 0.85,
    'google': 0.90,
    'tiktok': 0.75,
    'email': 0.80,
    'organic': 0.70,
    'direct': 0.95,
    'referral': 0.60,
}

TOUCH_TYPE_MULTIPLIERS = {
    'click': 1.5,
    'engagement': 1.3,
    'view': 1.2,
    'visit': 1.0,
    'impression': 0.8,
}

START = '__start__'
CONVERSION = '__conversion__'
NULL = '__null__'


def normalize(weights: Mapping[str, float]) -> Dict[str, float]:
    """Scale weights to sum to 1.0; empty if there is nothing to scale"""
    total = sum(weights.values())
    if total <= 0 or not math.isfinite(total):
        return {}
    return {channel: w / total for channel, w in weights.items()}


def accumulate(touchpoints: List[TouchPoint], raw: List[float]) -> Dict[str, float]:
    """Sum per-touch weights into per-channel weights, in order of first appearance"""
    channel_weights = defaultdict(float)
    for tp, w in zip(touchpoints, raw):
        channel_weights[tp.channel_id] += w
    return dict(channel_weights)


def linear_weights(journey: CustomerJourney) -> Dict[str, float]:
    return normalize(accumulate(list(journey.touchpoints), [1.0] * journey.touchpoint_count))


class AttributionAlgorithm:
    """Base class: static params at construction, pure weight() afterwards"""

    kind: str = ""
    model_type: str = "rule_based"
    features: List[str] = []

    def __init__(self, params: Optional[Mapping] = None):
        self.params = {**self.default_params(), **(params or {})}
        self.validate()

    @classmethod
    def default_params(cls) -> Dict:
        return {}

    def validate(self):
        pass

    def fit(self, journeys: List[CustomerJourney]) -> Dict:
        """Population-level parameters; rule-based models need none"""
        return {}

    def weight(self, journey: CustomerJourney, fitted: Optional[Mapping] = None) -> Dict[str, float]:
        weights = self._raw_weights(journey, fitted)
        normalized = normalize(weights)
        if not normalized:
            return linear_weights(journey)
        return normalized

    def _raw_weights(self, journey: CustomerJourney, fitted: Optional[Mapping]) -> Dict[str, float]:
        raise NotImplementedError


class LinearModel(AttributionAlgorithm):
    """Equal credit to every touchpoint"""

    kind = "linear"
    features = ['touch_count']

    def _raw_weights(self, journey, fitted):
        return accumulate(list(journey.touchpoints), [1.0] * journey.touchpoint_count)


class FirstTouchModel(AttributionAlgorithm):
    kind = "first_touch"
    features = ['first_touch']

    def _raw_weights(self, journey, fitted):
        return {journey.first_touch.channel_id: 1.0}


class LastTouchModel(AttributionAlgorithm):
    kind = "last_touch"
    features = ['last_touch']

    def _raw_weights(self, journey, fitted):
        return {journey.last_touch.channel_id: 1.0}


class PositionBasedModel(AttributionAlgorithm):
    """
    Position-based (U-shaped) attribution with platform effectiveness:
    - 40% credit to first touch
    - 40% credit to last touch
    - 20% split among middle touches
    Each touch's weight is scaled by its platform multiplier, then the whole
    vector is renormalized.
    """

    kind = "position_based"
    features = ['position_weight', 'platform_effectiveness']

    @classmethod
    def default_params(cls):
        return {
            'first_weight': settings.position_first_weight,
            'last_weight': settings.position_last_weight,
            'middle_weight': settings.position_middle_weight,
            'platform_multipliers': dict(PLATFORM_EFFECTIVENESS),
        }

    def validate(self):
        for key in ('first_weight', 'last_weight', 'middle_weight'):
            if self.params[key] < 0:
                raise ValidationError(f"{key} must be non-negative")
        total = self.params['first_weight'] + self.params['last_weight'] + self.params['middle_weight']
        if abs(total - 1.0) > 1e-6:
            raise ValidationError(f"Position weights must sum to 1, got {total}")

    def _raw_weights(self, journey, fitted):
        touchpoints = list(journey.touchpoints)
        n = len(touchpoints)
        multipliers = self.params['platform_multipliers'] or {}

        raw = []
        for index, tp in enumerate(touchpoints):
            if index == 0:
                weight = self.params['first_weight']
            elif index == n - 1:
                weight = self.params['last_weight']
            else:
                weight = self.params['middle_weight'] / (n - 2)
            raw.append(weight * multipliers.get(tp.platform, 1.0))

        return accumulate(touchpoints, raw)


class TimeDecayModel(AttributionAlgorithm):
    """
    Time decay attribution: more recent touchpoints get more credit

    weight = 2^(-days_before_last_touch / half_life)
    """

    kind = "time_decay"
    features = ['time_decay']

    @classmethod
    def default_params(cls):
        return {'half_life_days': settings.time_decay_half_life_days}

    def validate(self):
        if self.params['half_life_days'] <= 0:
            raise ValidationError("half_life_days must be positive")

    def _raw_weights(self, journey, fitted):
        touchpoints = list(journey.touchpoints)
        last_time = touchpoints[-1].timestamp
        half_life = self.params['half_life_days']

        raw = []
        for tp in touchpoints:
            days_before = (last_time - tp.timestamp).total_seconds() / 86400
            raw.append(math.pow(2, -days_before / half_life))

        return accumulate(touchpoints, raw)


class DataDrivenModel(AttributionAlgorithm):
    """
    Heuristic data-driven weights: platform performance score, touch-type
    intent and a recency bias (0.8 for the first touch up to 1.2 for the last)
    """

    kind = "data_driven"
    model_type = "data_driven"
    features = ['platform_performance', 'touch_type', 'recency']

    @classmethod
    def default_params(cls):
        return {
            'platform_scores': dict(PLATFORM_PERFORMANCE),
            'touch_type_multipliers': dict(TOUCH_TYPE_MULTIPLIERS),
            'default_score': 0.5,
        }

    def _raw_weights(self, journey, fitted):
        touchpoints = list(journey.touchpoints)
        n = len(touchpoints)
        scores = self.params['platform_scores']
        type_multipliers = self.params['touch_type_multipliers']

        raw = []
        for index, tp in enumerate(touchpoints):
            weight = scores.get(tp.platform, self.params['default_score'])
            weight *= type_multipliers.get(tp.touch_type, 1.0)
            weight *= 0.8 + ((index + 1) / n) * 0.4
            raw.append(weight)

        return accumulate(touchpoints, raw)


class MarkovChainModel(AttributionAlgorithm):
    """
    First-order Markov chain removal effect

    Builds a transition graph over observed channel sequences
    (start -> channels -> conversion | null); a channel's credit is the drop
    in conversion probability when it is removed from the graph.
    """

    kind = "markov_chain"
    model_type = "markov_chain"
    features = ['transition_probabilities', 'removal_effects', 'path_analysis']

    def fit(self, journeys):
        transitions = defaultdict(int)
        for journey in journeys:
            path = [START] + [tp.channel_id for tp in journey.touchpoints]
            path.append(CONVERSION if journey.converted else NULL)
            for a, b in zip(path, path[1:]):
                transitions[(a, b)] += 1

        channels = sorted({
            s for pair in transitions for s in pair
            if s not in (START, CONVERSION, NULL)
        })

        base = self._conversion_probability(transitions, channels)
        removal_effects = {}
        for channel in channels:
            without = self._conversion_probability(transitions, channels, removed=channel)
            removal_effects[channel] = max(base - without, 0.0)

        return {
            'base_conversion_probability': base,
            'removal_effects': removal_effects,
        }

    @staticmethod
    def _conversion_probability(transitions, channels, removed: Optional[str] = None) -> float:
        """Absorption probability into conversion from start"""
        states = [START] + [c for c in channels if c != removed]
        index = {s: i for i, s in enumerate(states)}
        n = len(states)

        outgoing = defaultdict(int)
        for (a, _), count in transitions.items():
            outgoing[a] += count

        q = np.zeros((n, n))
        to_conversion = np.zeros(n)
        for (a, b), count in transitions.items():
            if a not in index or outgoing[a] == 0:
                continue
            i = index[a]
            if b == CONVERSION:
                to_conversion[i] += count / outgoing[a]
            elif b in index:
                q[i, index[b]] += count / outgoing[a]
            # Transitions into the removed channel (or null) are lost

        try:
            absorption = np.linalg.solve(np.eye(n) - q, to_conversion)
        except np.linalg.LinAlgError:
            return 0.0
        return float(absorption[index[START]])

    def _raw_weights(self, journey, fitted):
        if not fitted or 'removal_effects' not in fitted:
            fitted = self.fit([journey])
        effects = fitted['removal_effects']
        return {channel: effects.get(channel, 0.0) for channel in journey.channels}


class ShapleyValueModel(AttributionAlgorithm):
    """
    Shapley value attribution over a journey's channels

    Coalition value v(S) = conversions of journeys whose channel set is a
    subset of S. Journeys touching more than max_channels distinct channels
    fall back to linear credit.
    """

    kind = "shapley"
    model_type = "algorithmic"
    features = ['coalition_values', 'marginal_contributions']

    @classmethod
    def default_params(cls):
        return {'max_channels': settings.shapley_max_channels}

    def fit(self, journeys):
        conversions: Dict[FrozenSet[str], int] = defaultdict(int)
        for journey in journeys:
            if journey.converted:
                conversions[frozenset(journey.channels)] += 1
        return {'coalition_conversions': dict(conversions)}

    def _raw_weights(self, journey, fitted):
        channels = list(journey.channels)
        n = len(channels)
        if n == 1:
            return {channels[0]: 1.0}
        if n > self.params['max_channels']:
            return {}

        if not fitted or 'coalition_conversions' not in fitted:
            fitted = self.fit([journey])

        grand = frozenset(channels)
        relevant = [
            (coalition, count)
            for coalition, count in fitted['coalition_conversions'].items()
            if coalition <= grand
        ]

        values: Dict[FrozenSet[str], float] = {}

        def v(coalition: FrozenSet[str]) -> float:
            if coalition not in values:
                values[coalition] = sum(count for c, count in relevant if c <= coalition)
            return values[coalition]

        shapley = {}
        for channel in channels:
            others = [c for c in channels if c != channel]
            phi = 0.0
            for size in range(len(others) + 1):
                w = math.factorial(size) * math.factorial(n - size - 1) / math.factorial(n)
                for subset in combinations(others, size):
                    coalition = frozenset(subset)
                    phi += w * (v(coalition | {channel}) - v(coalition))
            shapley[channel] = max(phi, 0.0)

        return shapley


class EnsembleModel(AttributionAlgorithm):
    """
    Weighted average of other registered models' weight vectors

    params: {'components': {model_id: weight, ...}}, weights summing to 1.
    """

    kind = "ensemble"
    model_type = "ensemble"
    features = ['component_predictions', 'weighted_average']

    def __init__(self, params=None, resolve: Optional[Callable[[str], AttributionAlgorithm]] = None):
        self.resolve = resolve
        super().__init__(params)

    @classmethod
    def default_params(cls):
        return {'components': {}}

    def validate(self):
        components = self.params.get('components') or {}
        if len(components) < 2:
            raise ValidationError("Ensemble needs at least two component models")
        if any(w < 0 for w in components.values()):
            raise ValidationError("Ensemble weights must be non-negative")
        total = sum(components.values())
        if abs(total - 1.0) > 1e-6:
            raise ValidationError(f"Ensemble weights must sum to 1, got {total}")

    def _component(self, model_id: str) -> AttributionAlgorithm:
        component = self.resolve(model_id) if self.resolve else None
        if component is None:
            raise PartialComputationError(f"Ensemble component '{model_id}' is not registered")
        return component

    def fit(self, journeys):
        return {
            model_id: self._component(model_id).fit(journeys)
            for model_id in self.params['components']
        }

    def weight(self, journey, fitted=None):
        fitted = fitted or {}
        combined = defaultdict(float)
        for model_id, share in self.params['components'].items():
            component = self._component(model_id)
            for channel, w in component.weight(journey, fitted.get(model_id)).items():
                combined[channel] += share * w

        normalized = normalize(combined)
        if not normalized:
            raise PartialComputationError(
                f"Ensemble produced no weights for journey {journey.journey_id}",
                customer_id=journey.customer_id
            )
        return normalized


ALGORITHMS = {
    cls.kind: cls
    for cls in (
        LinearModel,
        FirstTouchModel,
        LastTouchModel,
        PositionBasedModel,
        TimeDecayModel,
        DataDrivenModel,
        MarkovChainModel,
        ShapleyValueModel,
        EnsembleModel,
    )
}


def build_algorithm(kind: str, params: Optional[Mapping] = None, resolve=None) -> AttributionAlgorithm:
    """Instantiate a built-in algorithm by kind"""
    cls = ALGORITHMS.get(kind)
    if cls is None:
        raise ValidationError(f"Unknown attribution model kind '{kind}'")
    if cls is EnsembleModel:
        return EnsembleModel(params, resolve=resolve)
    return cls(params)
