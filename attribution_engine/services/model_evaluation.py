"""
Model Evaluation

Scores an attribution model by how well the channel credit it hands out
predicts which journeys convert. Credit learned on a training split becomes
a per-channel conversion propensity; a held-out journey is predicted to
convert when the combined propensity of its channels reaches the threshold.
"""
from collections import defaultdict
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sklearn.metrics import accuracy_score, f1_score, precision_score, recall_score

from attribution_engine.exceptions import PartialComputationError
from attribution_engine.models.domain import CustomerJourney
from attribution_engine.services.attribution_models import AttributionAlgorithm
from attribution_engine.utils.cancellation import CancellationToken
from attribution_engine.utils.helpers import stable_bucket


@dataclass(frozen=True)
class EvaluationResult:
    accuracy: float
    precision: float
    recall: float
    f1_score: float
    journeys: int


def split_journeys(
    journeys: List[CustomerJourney],
    holdout_pct: int = 30
) -> Tuple[List[CustomerJourney], List[CustomerJourney]]:
    """Deterministic train/test split keyed on the journey id"""
    train, test = [], []
    for journey in journeys:
        if stable_bucket(journey.journey_id) < holdout_pct:
            test.append(journey)
        else:
            train.append(journey)
    if not train or not test:
        return journeys, journeys
    return train, test


def channel_propensity(
    algorithm: AttributionAlgorithm,
    journeys: List[CustomerJourney],
    cancel_token: Optional[CancellationToken] = None
) -> dict:
    """Attributed conversions per channel divided by journeys the channel appeared in"""
    fitted = algorithm.fit(journeys)
    credit = defaultdict(float)
    appearances = defaultdict(int)

    for journey in journeys:
        if cancel_token:
            cancel_token.raise_if_cancelled("model evaluation")
        for channel in journey.channels:
            appearances[channel] += 1
        if not journey.converted:
            continue
        try:
            weights = algorithm.weight(journey, fitted)
        except PartialComputationError:
            continue
        for channel, w in weights.items():
            credit[channel] += w

    return {
        channel: min(1.0, credit[channel] / count)
        for channel, count in appearances.items()
    }


def predict_conversion(journey: CustomerJourney, propensity: dict) -> float:
    """Probability that at least one of the journey's channels converts it"""
    miss = 1.0
    for channel in journey.channels:
        miss *= 1.0 - propensity.get(channel, 0.0)
    return 1.0 - miss


def evaluate_model(
    algorithm: AttributionAlgorithm,
    journeys: List[CustomerJourney],
    threshold: float = 0.5,
    cancel_token: Optional[CancellationToken] = None
) -> Optional[EvaluationResult]:
    """
    Accuracy / precision / recall / F1 (all 0-1) on a held-out split

    Returns None when there are no journeys to score.
    """
    if not journeys:
        return None

    train, test = split_journeys(journeys)
    propensity = channel_propensity(algorithm, train, cancel_token)

    y_true = [int(j.converted) for j in test]
    y_pred = [int(predict_conversion(j, propensity) >= threshold) for j in test]

    return EvaluationResult(
        accuracy=float(accuracy_score(y_true, y_pred)),
        precision=float(precision_score(y_true, y_pred, zero_division=0)),
        recall=float(recall_score(y_true, y_pred, zero_division=0)),
        f1_score=float(f1_score(y_true, y_pred, zero_division=0)),
        journeys=len(journeys),
    )
