"""
Attribution Engine

Single entry point wiring the touchpoint store, model registry, experiment
manager, alert monitor, report builder and scheduler together. The API
layer and embedding applications talk to this class only.
"""
from datetime import datetime
from typing import Iterable, List, Mapping, Optional

from attribution_engine.config import Settings, get_settings
from attribution_engine.exceptions import PartialComputationError
from attribution_engine.models.base import SessionLocal, make_session_factory
from attribution_engine.models.domain import (
    ArmMetrics, AttributionReport, CustomerJourney, DateRange, TouchPoint
)
from attribution_engine.scheduler import EvaluationScheduler
from attribution_engine.services.alert_monitor import AlertMonitor
from attribution_engine.services.experiment_manager import ExperimentManager
from attribution_engine.services.model_registry import ModelRegistry, TrainingHandle
from attribution_engine.services.report_builder import ReportBuilder
from attribution_engine.services.touchpoint_store import TouchpointStore
from attribution_engine.utils.cancellation import CancellationToken
from attribution_engine.utils.logger import log


class AttributionEngine:
    """Multi-touch attribution engine facade"""

    def __init__(
        self,
        session_factory=None,
        settings: Optional[Settings] = None,
        training_executor=None,
        scheduler: Optional[EvaluationScheduler] = None
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or SessionLocal

        self.store = TouchpointStore(self.session_factory, self.settings.attribution_window_days)
        self.registry = ModelRegistry(
            self.session_factory,
            journey_source=self.store.all_journeys,
            executor=training_executor,
        )
        self.experiments = ExperimentManager(
            self.registry, self.store.journeys_in_range, self.session_factory, self.settings
        )
        self.alerts = AlertMonitor(
            self.registry, self.store.journeys_in_range, self.session_factory, self.settings
        )
        self.reports = ReportBuilder(
            self.store, self.registry, self.experiments, self.alerts, self.settings
        )

        if scheduler is None and self.settings.enable_scheduler:
            scheduler = EvaluationScheduler(self.settings)
        self.scheduler = scheduler
        self.experiments.scheduler = scheduler
        self.started_at: Optional[datetime] = None

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "AttributionEngine":
        """Engine on its own database (tables are created if missing)"""
        return cls(session_factory=make_session_factory(database_url), **kwargs)

    # Lifecycle

    def start(self):
        """Start periodic drift checks and resume evaluation of running experiments"""
        if self.scheduler is None:
            log.info("Scheduler disabled, periodic evaluation is off")
        else:
            self.scheduler.schedule_drift_check(self.run_drift_check)
            for experiment in self.experiments.running():
                self.scheduler.schedule_experiment(experiment['id'], self.experiments.evaluate)
            self.scheduler.start()
        self.started_at = datetime.utcnow()
        log.info(f"Attribution engine started, champion: {self.registry.champion_id}")

    def shutdown(self):
        """Stop scheduled jobs and training; no state changes after this returns"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=True)
        self.registry.shutdown(wait=True)
        log.info("Attribution engine stopped")

    def health(self) -> dict:
        return {
            'status': 'healthy',
            'champion': self.registry.champion_id,
            'touchpoints': self.store.revision,
            'models': len(self.registry.list_models()),
            'running_experiments': len(self.experiments.running()),
            'open_alerts': len(self.alerts.list()),
            'scheduler_running': bool(self.scheduler and self.scheduler.running),
            'started_at': self.started_at,
        }

    # Touchpoints / journeys

    def ingest_touchpoint(self, touchpoint: TouchPoint) -> TouchPoint:
        return self.store.ingest(touchpoint)

    def ingest_touchpoints(self, touchpoints: Iterable[TouchPoint]) -> List[TouchPoint]:
        return self.store.ingest_many(touchpoints)

    def journeys_for_customer(self, customer_id: str) -> List[CustomerJourney]:
        """Customer journeys weighted by the current champion; journeys that fail weighting are left out"""
        journeys = self.store.journeys_for_customer(customer_id)
        model_id = self.registry.champion_id
        try:
            fitted = self.registry.fit(model_id, journeys) if journeys else {}
        except PartialComputationError as e:
            log.error(f"Fitting {model_id} for customer {customer_id} failed: {str(e)}")
            fitted = {}

        weighted = []
        for journey in journeys:
            try:
                weights = self.registry.weight(model_id, journey, fitted)
            except PartialComputationError as e:
                log.warning(f"Skipping journey {journey.journey_id} of {customer_id}: {str(e)}")
                continue
            weighted.append(journey.with_attribution(weights))
        return weighted

    # Reports

    def generate_report(
        self,
        date_range: DateRange,
        model_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AttributionReport:
        return self.reports.build(date_range, model_id=model_id, cancel_token=cancel_token)

    # Models

    def list_models(self) -> List[dict]:
        return self.registry.list_models()

    def get_model(self, model_id: str) -> dict:
        return self.registry.get(model_id)

    def register_model(self, model: Mapping) -> dict:
        return self.registry.register(model)

    def set_active_model(self, model_id: str) -> dict:
        return self.registry.set_active(model_id)

    def train_model(self, model_id: str, cancel_token: Optional[CancellationToken] = None) -> TrainingHandle:
        return self.registry.train(model_id, cancel_token)

    # Experiments

    def create_experiment(
        self,
        name: str,
        control_id: str,
        treatment_id: str,
        traffic_split: float,
        description: str = ""
    ) -> dict:
        return self.experiments.create(name, control_id, treatment_id, traffic_split, description)

    def start_experiment(self, experiment_id: str) -> dict:
        return self.experiments.start(experiment_id)

    def stop_experiment(self, experiment_id: str, winner: Optional[str] = None) -> dict:
        return self.experiments.stop(experiment_id, winner)

    def cancel_experiment(self, experiment_id: str) -> dict:
        return self.experiments.cancel(experiment_id)

    def list_experiments(self) -> List[dict]:
        return self.experiments.list()

    def get_experiment(self, experiment_id: str) -> dict:
        return self.experiments.get(experiment_id)

    def record_experiment_metrics(
        self,
        experiment_id: str,
        control: ArmMetrics,
        treatment: ArmMetrics,
        significance: float,
        confidence: float,
        at: Optional[datetime] = None
    ) -> dict:
        return self.experiments.record_metrics(experiment_id, control, treatment, significance, confidence, at)

    def evaluate_experiment(self, experiment_id: str, now: Optional[datetime] = None) -> dict:
        return self.experiments.evaluate(experiment_id, now)

    # Alerts

    def list_alerts(self, include_resolved: bool = False) -> List[dict]:
        return self.alerts.list(include_resolved)

    def resolve_alert(self, alert_id: str) -> dict:
        return self.alerts.resolve(alert_id)

    def run_drift_check(self, now: Optional[datetime] = None) -> List[dict]:
        return self.alerts.evaluate(now)
