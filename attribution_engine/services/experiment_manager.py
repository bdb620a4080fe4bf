"""
Experiment Manager

Champion/challenger A/B experiments between two registered attribution
models. Customers are split between the arms by a stable hash; every
evaluation tick appends a metric snapshot and may auto-complete the
experiment once the result is significant and the minimum period has passed.
"""
import math
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from scipy import stats

from attribution_engine.config import Settings, get_settings
from attribution_engine.exceptions import NotFoundError, StateConflictError, ValidationError
from attribution_engine.models.base import SessionLocal, session_scope
from attribution_engine.models.domain import ArmMetrics, CustomerJourney, DateRange
from attribution_engine.models.experiment import (
    AttributionExperiment, ExperimentMetricSnapshot, TERMINAL_STATUSES
)
from attribution_engine.services.model_evaluation import evaluate_model
from attribution_engine.utils.helpers import stable_bucket
from attribution_engine.utils.logger import log

WINNERS = ('control', 'treatment')


def assign_arm(experiment_id: str, customer_id: str, traffic_split: float) -> str:
    """Same customer, same arm for the whole experiment"""
    return 'treatment' if stable_bucket(f"{experiment_id}:{customer_id}", 10000) < traffic_split * 100 else 'control'


def split_journeys(
    experiment_id: str,
    journeys: List[CustomerJourney],
    traffic_split: float
) -> Tuple[List[CustomerJourney], List[CustomerJourney]]:
    control, treatment = [], []
    for journey in journeys:
        if assign_arm(experiment_id, journey.customer_id, traffic_split) == 'treatment':
            treatment.append(journey)
        else:
            control.append(journey)
    return control, treatment


def calculate_lift(control_revenue: float, treatment_revenue: float) -> float:
    """Treatment vs control revenue (%), 0 when control has no revenue"""
    if control_revenue <= 0:
        return 0.0
    return (treatment_revenue / control_revenue - 1) * 100


def revenue_significance(control_values: List[float], treatment_values: List[float]) -> float:
    """(1 - p) x 100 of Welch's t-test on per-journey revenue"""
    if len(control_values) < 2 or len(treatment_values) < 2:
        return 0.0
    result = stats.ttest_ind(treatment_values, control_values, equal_var=False)
    p_value = float(result.pvalue)
    if math.isnan(p_value):
        return 0.0
    return (1 - p_value) * 100


def conversion_confidence(
    control_conversions: int,
    control_journeys: int,
    treatment_conversions: int,
    treatment_journeys: int
) -> float:
    """(1 - p) x 100 of a two-proportion z-test on conversion rate"""
    if control_journeys == 0 or treatment_journeys == 0:
        return 0.0
    pooled = (control_conversions + treatment_conversions) / (control_journeys + treatment_journeys)
    se = math.sqrt(pooled * (1 - pooled) * (1 / control_journeys + 1 / treatment_journeys))
    if se == 0:
        return 0.0
    z = (treatment_conversions / treatment_journeys - control_conversions / control_journeys) / se
    p_value = 2 * stats.norm.sf(abs(z))
    return float((1 - p_value) * 100)


class ExperimentManager:
    """Lifecycle and evaluation of attribution experiments"""

    def __init__(
        self,
        registry,
        journey_source: Callable[[DateRange], List[CustomerJourney]],
        session_factory=None,
        settings: Optional[Settings] = None
    ):
        self.registry = registry
        self.journey_source = journey_source
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.scheduler = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> List[dict]:
        with session_scope(self.session_factory) as db:
            rows = db.query(AttributionExperiment).order_by(
                AttributionExperiment.created_at, AttributionExperiment.id
            ).all()
            return [r.to_dict() for r in rows]

    def get(self, experiment_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            return self._row(db, experiment_id).to_dict()

    def running(self) -> List[dict]:
        return [e for e in self.list() if e['status'] == 'running']

    def snapshots(self, experiment_id: str) -> List[dict]:
        """Evaluation history, oldest first"""
        with session_scope(self.session_factory) as db:
            self._row(db, experiment_id)
            rows = db.query(ExperimentMetricSnapshot).filter(
                ExperimentMetricSnapshot.experiment_id == experiment_id
            ).order_by(ExperimentMetricSnapshot.recorded_at, ExperimentMetricSnapshot.id).all()
            return [
                {
                    'recorded_at': r.recorded_at,
                    'control': {
                        'accuracy': r.control_accuracy,
                        'revenue': r.control_revenue,
                        'conversions': r.control_conversions,
                        'journeys': r.control_journeys,
                    },
                    'treatment': {
                        'accuracy': r.treatment_accuracy,
                        'revenue': r.treatment_revenue,
                        'conversions': r.treatment_conversions,
                        'journeys': r.treatment_journeys,
                    },
                    'lift': r.lift,
                    'significance': r.significance,
                    'confidence': r.confidence,
                }
                for r in rows
            ]

    @staticmethod
    def _row(db, experiment_id: str) -> AttributionExperiment:
        row = db.get(AttributionExperiment, experiment_id)
        if row is None:
            raise NotFoundError(f"Experiment '{experiment_id}' not found")
        return row

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        control_id: str,
        treatment_id: str,
        traffic_split: float,
        description: str = ""
    ) -> dict:
        """New experiment in draft; nothing is written if validation fails"""
        if not name or not name.strip():
            raise ValidationError("Experiment name is required")
        if traffic_split is None or not 0 <= traffic_split <= 100:
            raise ValidationError(f"Traffic split must be between 0 and 100, got {traffic_split}")
        if control_id == treatment_id:
            raise ValidationError("Control and treatment must be different models")
        for model_id in (control_id, treatment_id):
            if not self.registry.exists(model_id):
                raise NotFoundError(f"Attribution model '{model_id}' not found")

        with self._lock:
            with session_scope(self.session_factory) as db:
                row = AttributionExperiment(
                    id=f"exp_{uuid.uuid4().hex[:12]}",
                    name=name.strip(),
                    description=description,
                    status='draft',
                    control_model=control_id,
                    treatment_model=treatment_id,
                    traffic_split=float(traffic_split),
                    created_at=datetime.utcnow(),
                )
                db.add(row)
                db.flush()
                experiment = row.to_dict()

        log.info(f"Created experiment {experiment['id']}: {control_id} vs {treatment_id} ({traffic_split}% treatment)")
        return experiment

    def start(self, experiment_id: str, now: Optional[datetime] = None) -> dict:
        with self._lock:
            with session_scope(self.session_factory) as db:
                row = self._row(db, experiment_id)
                if row.status != 'draft':
                    raise StateConflictError(f"Experiment '{experiment_id}' is {row.status}, only draft experiments can start")
                row.status = 'running'
                row.start_date = now or datetime.utcnow()
                experiment = row.to_dict()

        if self.scheduler is not None:
            self.scheduler.schedule_experiment(experiment_id, self.evaluate)
        log.info(f"Started experiment {experiment_id}")
        return experiment

    def stop(self, experiment_id: str, winner: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        if winner is not None and winner not in WINNERS:
            raise ValidationError(f"Winner must be one of {WINNERS}, got '{winner}'")

        with self._lock:
            with session_scope(self.session_factory) as db:
                row = self._row(db, experiment_id)
                if row.status != 'running':
                    raise StateConflictError(f"Experiment '{experiment_id}' is {row.status}, only running experiments can stop")
                row.status = 'completed'
                row.end_date = now or datetime.utcnow()
                row.winner = winner
                row.conclusion = (
                    f"Stopped manually, {winner} declared winner" if winner
                    else "Stopped manually without a winner"
                )
                experiment = row.to_dict()

        self._unschedule(experiment_id)
        log.info(f"Stopped experiment {experiment_id} (winner: {winner})")
        return experiment

    def cancel(self, experiment_id: str, now: Optional[datetime] = None) -> dict:
        with self._lock:
            with session_scope(self.session_factory) as db:
                row = self._row(db, experiment_id)
                if row.status in TERMINAL_STATUSES:
                    raise StateConflictError(f"Experiment '{experiment_id}' is already {row.status}")
                row.status = 'cancelled'
                row.end_date = now or datetime.utcnow()
                experiment = row.to_dict()

        self._unschedule(experiment_id)
        log.info(f"Cancelled experiment {experiment_id}")
        return experiment

    def _unschedule(self, experiment_id: str):
        if self.scheduler is not None:
            self.scheduler.cancel_experiment(experiment_id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_metrics(
        self,
        experiment_id: str,
        control: ArmMetrics,
        treatment: ArmMetrics,
        significance: float,
        confidence: float,
        at: Optional[datetime] = None
    ) -> dict:
        """
        Append one metric snapshot and apply auto-completion

        Raises StateConflictError unless the experiment is running.
        """
        return self._apply_metrics(experiment_id, control, treatment, significance, confidence, at, strict=True)

    def _apply_metrics(self, experiment_id, control, treatment, significance, confidence, at, strict) -> dict:
        at = at or datetime.utcnow()
        completed = False

        with self._lock:
            with session_scope(self.session_factory) as db:
                row = self._row(db, experiment_id)
                if row.status != 'running':
                    if strict:
                        raise StateConflictError(f"Experiment '{experiment_id}' is {row.status}, not running")
                    # Stopped or completed while this tick was computing
                    return row.to_dict()

                lift = calculate_lift(control.revenue, treatment.revenue)

                db.add(ExperimentMetricSnapshot(
                    experiment_id=experiment_id,
                    recorded_at=at,
                    control_accuracy=control.accuracy,
                    control_revenue=control.revenue,
                    control_conversions=control.conversions,
                    control_journeys=control.journeys,
                    treatment_accuracy=treatment.accuracy,
                    treatment_revenue=treatment.revenue,
                    treatment_conversions=treatment.conversions,
                    treatment_journeys=treatment.journeys,
                    lift=lift,
                    significance=significance,
                    confidence=confidence,
                ))

                row.control_accuracy = control.accuracy
                row.control_revenue = control.revenue
                row.control_conversions = control.conversions
                row.treatment_accuracy = treatment.accuracy
                row.treatment_revenue = treatment.revenue
                row.treatment_conversions = treatment.conversions
                row.lift = lift
                row.significance = significance
                row.confidence = confidence
                row.evaluations = (row.evaluations or 0) + 1

                elapsed = at - row.start_date
                if (
                    significance >= self.settings.experiment_significance_cutoff
                    and elapsed >= timedelta(days=self.settings.experiment_min_days)
                ):
                    row.status = 'completed'
                    row.end_date = at
                    if lift > self.settings.experiment_lift_threshold:
                        row.winner = 'treatment'
                        row.conclusion = (
                            f"Treatment model shows {lift:.1f}% lift with {significance:.1f}% significance"
                        )
                    else:
                        row.winner = 'control'
                        row.conclusion = "Control model remains champion with insufficient lift from treatment"
                    completed = True

                experiment = row.to_dict()

        if completed:
            self._unschedule(experiment_id)
            log.info(f"Experiment {experiment_id} auto-completed, winner: {experiment['winner']}")
        else:
            log.debug(
                f"Experiment {experiment_id}: lift {lift:.2f}%, significance {significance:.1f}, "
                f"confidence {confidence:.1f}"
            )
        return experiment

    def arm_metrics(self, model_id: str, journeys: List[CustomerJourney]) -> ArmMetrics:
        """Revenue, conversions and model accuracy (0-100) for one arm"""
        evaluation = evaluate_model(self.registry.algorithm(model_id), journeys) if journeys else None
        return ArmMetrics(
            accuracy=evaluation.accuracy * 100 if evaluation else 0.0,
            revenue=sum(j.total_value for j in journeys),
            conversions=sum(1 for j in journeys if j.converted),
            journeys=len(journeys),
        )

    def evaluate(self, experiment_id: str, now: Optional[datetime] = None) -> dict:
        """
        One evaluation tick

        No-op for experiments that are not running, so a late tick after
        stop or auto-completion changes nothing.
        """
        now = now or datetime.utcnow()
        experiment = self.get(experiment_id)
        if experiment['status'] != 'running':
            return experiment

        start = experiment['start_date']
        if now <= start:
            return experiment

        journeys = self.journey_source(DateRange(start, now))
        control_journeys, treatment_journeys = split_journeys(
            experiment_id, journeys, experiment['traffic_split']
        )

        control = self.arm_metrics(experiment['control_model'], control_journeys)
        treatment = self.arm_metrics(experiment['treatment_model'], treatment_journeys)

        significance = revenue_significance(
            [j.total_value for j in control_journeys],
            [j.total_value for j in treatment_journeys],
        )
        confidence = conversion_confidence(
            control.conversions, control.journeys,
            treatment.conversions, treatment.journeys,
        )

        return self._apply_metrics(experiment_id, control, treatment, significance, confidence, now, strict=False)
