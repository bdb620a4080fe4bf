"""
Attribution Model Registry

Holds the registered attribution models, owns the single "champion"
reference (the active model) and runs model training in the background.

Reads are served from memory; every mutation is written through to the
attribution_models table.
"""
import copy
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from attribution_engine.exceptions import (
    AttributionEngineError, NotFoundError, PartialComputationError,
    StateConflictError, ValidationError
)
from attribution_engine.models.attribution import AttributionModelRecord, ModelAccuracySnapshot
from attribution_engine.models.base import SessionLocal, session_scope
from attribution_engine.models.domain import CustomerJourney
from attribution_engine.services.attribution_models import (
    ALGORITHMS, AttributionAlgorithm, EnsembleModel, build_algorithm
)
from attribution_engine.services.model_evaluation import evaluate_model
from attribution_engine.utils.cancellation import CancellationToken
from attribution_engine.utils.helpers import increment_version
from attribution_engine.utils.logger import log

MODEL_TYPES = ('rule_based', 'algorithmic', 'ml', 'ensemble', 'data_driven', 'markov_chain')
MODEL_STATUSES = ('training', 'ready', 'deployed', 'deprecated')

DEFAULT_CHAMPION = 'position_based'

DEFAULT_MODELS = [
    {
        'id': 'position_based',
        'name': 'Enhanced Position-Based Model',
        'type': 'rule_based',
        'kind': 'position_based',
        'description': '40/20/40 position weights scaled by platform effectiveness',
        'accuracy': 0.82, 'precision': 0.84, 'recall': 0.80, 'f1_score': 0.82,
        'version': '2.1.0',
    },
    {
        'id': 'time_decay_plus',
        'name': 'Enhanced Time Decay Model',
        'type': 'rule_based',
        'kind': 'time_decay',
        'description': 'Exponential time decay with a 7-day half-life',
        'accuracy': 0.76, 'precision': 0.78, 'recall': 0.74, 'f1_score': 0.76,
        'version': '1.1.0',
    },
    {
        'id': 'markov_chain_attribution',
        'name': 'Markov Chain Attribution',
        'type': 'markov_chain',
        'kind': 'markov_chain',
        'description': 'State-based attribution using removal effects on a transition graph',
        'accuracy': 0.86, 'precision': 0.88, 'recall': 0.84, 'f1_score': 0.86,
        'version': '1.2.0',
    },
    {
        'id': 'shapley_value',
        'name': 'Shapley Value Attribution',
        'type': 'algorithmic',
        'kind': 'shapley',
        'description': 'Game theory based attribution using Shapley values',
        'accuracy': 0.84, 'precision': 0.86, 'recall': 0.82, 'f1_score': 0.84,
        'version': '1.3.1',
    },
    {
        'id': 'data_driven_attribution',
        'name': 'Data-Driven Attribution',
        'type': 'data_driven',
        'kind': 'data_driven',
        'description': 'Platform performance, touch intent and recency weighting',
        'accuracy': 0.87, 'precision': 0.89, 'recall': 0.85, 'f1_score': 0.87,
        'version': '1.4.3',
    },
    {
        'id': 'ensemble_attribution',
        'name': 'Ensemble Attribution Model',
        'type': 'ensemble',
        'kind': 'ensemble',
        'description': 'Weighted average of position-based, Markov chain and time decay models',
        'params': {
            'components': {
                'position_based': 0.5,
                'markov_chain_attribution': 0.3,
                'time_decay_plus': 0.2,
            }
        },
        'accuracy': 0.91, 'precision': 0.93, 'recall': 0.89, 'f1_score': 0.91,
        'version': '1.5.2',
    },
    {
        'id': 'linear',
        'name': 'Linear Attribution',
        'type': 'rule_based',
        'kind': 'linear',
        'description': 'Equal credit to every touchpoint',
        'accuracy': 0.72, 'precision': 0.74, 'recall': 0.70, 'f1_score': 0.72,
    },
    {
        'id': 'first_touch',
        'name': 'First Touch Attribution',
        'type': 'rule_based',
        'kind': 'first_touch',
        'description': 'All credit to the first touchpoint',
        'accuracy': 0.65, 'precision': 0.66, 'recall': 0.63, 'f1_score': 0.64,
    },
    {
        'id': 'last_touch',
        'name': 'Last Touch Attribution',
        'type': 'rule_based',
        'kind': 'last_touch',
        'description': 'All credit to the last touchpoint',
        'accuracy': 0.68, 'precision': 0.70, 'recall': 0.66, 'f1_score': 0.68,
    },
]


@dataclass
class TrainingHandle:
    """Poll or await a background training run"""
    model_id: str
    future: Future
    cancel_token: CancellationToken

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> dict:
        """Trained model snapshot; re-raises OperationCancelled or the training error"""
        return self.future.result(timeout)

    def cancel(self):
        """Ask the run to stop; the model keeps its pre-training status and metrics"""
        self.cancel_token.cancel()


class ModelRegistry:
    """Registered attribution models and the champion reference"""

    def __init__(
        self,
        session_factory=None,
        journey_source: Optional[Callable[[], List[CustomerJourney]]] = None,
        executor: Optional[Executor] = None
    ):
        self.session_factory = session_factory or SessionLocal
        self.journey_source = journey_source
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="model-training")

        self._lock = threading.RLock()
        self._entries: Dict[str, dict] = {}
        self._algorithms: Dict[str, AttributionAlgorithm] = {}
        self._champion_id: Optional[str] = None
        self._training: Dict[str, TrainingHandle] = {}

        self._load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self):
        with session_scope(self.session_factory) as db:
            rows = db.query(AttributionModelRecord).order_by(AttributionModelRecord.created_at).all()
            entries = [row.to_dict() for row in rows]

        if not entries:
            self._seed_defaults()
            return

        # Non-ensembles first so ensemble components resolve
        for entry in sorted(entries, key=lambda e: e['kind'] == EnsembleModel.kind):
            try:
                self._algorithms[entry['id']] = self._build(entry['kind'], entry['params'])
            except ValidationError as e:
                log.error(f"Skipping model {entry['id']}: {str(e)}")
                continue
            if entry['status'] == 'training':
                # A run interrupted by a restart never finished
                entry['status'] = 'deployed' if entry['is_active'] else 'ready'
            self._entries[entry['id']] = entry

        active = [e['id'] for e in entries if e['is_active'] and e['id'] in self._entries]
        if len(active) == 1:
            self._champion_id = active[0]
        elif self._entries:
            target = active[0] if active else (
                DEFAULT_CHAMPION if DEFAULT_CHAMPION in self._entries else next(iter(self._entries))
            )
            self.set_active(target)

        log.info(f"Loaded {len(self._entries)} attribution models, champion: {self._champion_id}")

    def _seed_defaults(self):
        for model in DEFAULT_MODELS:
            self.register(model)
        self.set_active(DEFAULT_CHAMPION)
        log.info(f"Seeded {len(DEFAULT_MODELS)} default attribution models")

    def _build(self, kind: str, params: Optional[Mapping]) -> AttributionAlgorithm:
        return build_algorithm(kind, params, resolve=self._algorithms.get)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_models(self) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values()]

    def get(self, model_id: str) -> dict:
        with self._lock:
            return copy.deepcopy(self._entry(model_id))

    def exists(self, model_id: str) -> bool:
        return model_id in self._entries

    @property
    def champion_id(self) -> Optional[str]:
        return self._champion_id

    def champion(self) -> dict:
        with self._lock:
            if self._champion_id is None:
                raise NotFoundError("No active attribution model")
            return copy.deepcopy(self._entries[self._champion_id])

    def algorithm(self, model_id: str) -> AttributionAlgorithm:
        algorithm = self._algorithms.get(model_id)
        if algorithm is None:
            raise NotFoundError(f"Attribution model '{model_id}' not found")
        return algorithm

    def _entry(self, model_id: str) -> dict:
        entry = self._entries.get(model_id)
        if entry is None:
            raise NotFoundError(f"Attribution model '{model_id}' not found")
        return entry

    # ------------------------------------------------------------------
    # Pure computation
    # ------------------------------------------------------------------

    def fit(self, model_id: str, journeys: List[CustomerJourney]) -> dict:
        """Population parameters for model_id over journeys"""
        return self.algorithm(model_id).fit(journeys)

    def weight(
        self,
        model_id: str,
        journey: CustomerJourney,
        fitted: Optional[Mapping] = None
    ) -> Dict[str, float]:
        """
        Channel weights for one journey

        Any failure is reported as PartialComputationError so callers can
        drop the journey instead of aborting.
        """
        algorithm = self.algorithm(model_id)
        try:
            return algorithm.weight(journey, fitted)
        except PartialComputationError as e:
            if e.customer_id is None:
                e.customer_id = journey.customer_id
            raise
        except Exception as e:
            raise PartialComputationError(
                f"Model {model_id} failed on journey {journey.journey_id}: {type(e).__name__}: {str(e)}",
                customer_id=journey.customer_id
            ) from e

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, model: Mapping) -> dict:
        """
        Register a new model

        Raises ValidationError for a duplicate id, unknown kind, invalid params
        or an ensemble over unknown / ensemble components.
        """
        model_id = (model.get('id') or '').strip()
        name = (model.get('name') or '').strip()
        kind = model.get('kind')

        if not model_id:
            raise ValidationError("Model id is required")
        if not name:
            raise ValidationError(f"Model {model_id}: name is required")
        if kind not in ALGORITHMS:
            raise ValidationError(f"Model {model_id}: unknown kind '{kind}'")
        model_type = model.get('type') or ALGORITHMS[kind].model_type
        if model_type not in MODEL_TYPES:
            raise ValidationError(f"Model {model_id}: unknown type '{model_type}'")
        status = model.get('status') or 'ready'
        if status not in ('ready', 'deprecated'):
            raise ValidationError(f"Model {model_id}: cannot register with status '{status}'")

        params = copy.deepcopy(dict(model.get('params') or {}))

        with self._lock:
            if model_id in self._entries:
                raise ValidationError(f"Model '{model_id}' is already registered")

            if kind == EnsembleModel.kind:
                for component_id in (params.get('components') or {}):
                    component = self._entries.get(component_id)
                    if component is None:
                        raise ValidationError(f"Ensemble {model_id}: unknown component '{component_id}'")
                    if component['kind'] == EnsembleModel.kind:
                        raise ValidationError(f"Ensemble {model_id}: component '{component_id}' is itself an ensemble")

            algorithm = self._build(kind, params)
            now = datetime.utcnow()

            record = AttributionModelRecord(
                id=model_id,
                name=name,
                type=model_type,
                kind=kind,
                description=model.get('description'),
                params=algorithm.params,
                accuracy=float(model.get('accuracy', 0.0)),
                precision=float(model.get('precision', 0.0)),
                recall=float(model.get('recall', 0.0)),
                f1_score=float(model.get('f1_score', 0.0)),
                training_journeys=int(model.get('training_journeys', 0)),
                features=list(model.get('features') or algorithm.features),
                last_trained=model.get('last_trained'),
                status=status,
                version=model.get('version') or '1.0.0',
                is_active=False,
                created_at=now,
            )
            with session_scope(self.session_factory) as db:
                db.add(record)
                entry = record.to_dict()

            self._entries[model_id] = entry
            self._algorithms[model_id] = algorithm

        log.info(f"Registered attribution model {model_id} ({kind})")
        return copy.deepcopy(entry)

    def set_active(self, model_id: str) -> dict:
        """
        Make model_id the champion

        Flips is_active off for every other model and on for the target in
        one transaction; concurrent readers see the old or the new champion.
        """
        with self._lock:
            entry = self._entry(model_id)
            if entry['status'] == 'deprecated':
                raise StateConflictError(f"Model '{model_id}' is deprecated and cannot be activated")

            previous_id = self._champion_id
            if previous_id == model_id and entry['is_active']:
                return copy.deepcopy(entry)

            with session_scope(self.session_factory) as db:
                db.query(AttributionModelRecord).filter(
                    AttributionModelRecord.id != model_id
                ).update({'is_active': False}, synchronize_session=False)
                db.query(AttributionModelRecord).filter(
                    AttributionModelRecord.id != model_id,
                    AttributionModelRecord.status == 'deployed'
                ).update({'status': 'ready'}, synchronize_session=False)

                row = db.get(AttributionModelRecord, model_id)
                row.is_active = True
                if row.status != 'training':
                    row.status = 'deployed'

            for other in self._entries.values():
                other['is_active'] = False
                if other['status'] == 'deployed':
                    other['status'] = 'ready'
            entry['is_active'] = True
            if entry['status'] != 'training':
                entry['status'] = 'deployed'
            self._champion_id = model_id

        log.info(f"Champion attribution model changed: {previous_id} -> {model_id}")
        return copy.deepcopy(entry)

    def deprecate(self, model_id: str) -> dict:
        with self._lock:
            entry = self._entry(model_id)
            if entry['is_active']:
                raise StateConflictError(f"Model '{model_id}' is the champion; activate another model first")
            if entry['status'] == 'training':
                raise StateConflictError(f"Model '{model_id}' is training")
            self._persist(model_id, status='deprecated')
            entry['status'] = 'deprecated'
        log.info(f"Deprecated attribution model {model_id}")
        return copy.deepcopy(entry)

    def _persist(self, model_id: str, **fields):
        with session_scope(self.session_factory) as db:
            row = db.get(AttributionModelRecord, model_id)
            for key, value in fields.items():
                setattr(row, key, value)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, model_id: str, cancel_token: Optional[CancellationToken] = None) -> TrainingHandle:
        """
        Retrain model_id in the background

        Status becomes 'training' immediately; registry reads keep working
        while the run is in flight.
        """
        with self._lock:
            entry = self._entry(model_id)
            if entry['status'] == 'training':
                raise StateConflictError(f"Model '{model_id}' is already training")
            if entry['status'] == 'deprecated':
                raise StateConflictError(f"Model '{model_id}' is deprecated")

            prior = {
                key: entry[key]
                for key in ('status', 'accuracy', 'precision', 'recall', 'f1_score')
            }
            self._persist(model_id, status='training')
            entry['status'] = 'training'

            token = cancel_token or CancellationToken()
            try:
                future = self._executor.submit(self._run_training, model_id, prior, token)
            except RuntimeError as e:
                # Pool already shut down
                self._persist(model_id, status=prior['status'])
                entry['status'] = prior['status']
                raise StateConflictError(f"Cannot train '{model_id}': {str(e)}") from e
            handle = TrainingHandle(model_id=model_id, future=future, cancel_token=token)
            self._training[model_id] = handle

        log.info(f"Training started for attribution model {model_id}")
        return handle

    def _run_training(self, model_id: str, prior: dict, token: CancellationToken) -> dict:
        try:
            token.raise_if_cancelled("training")
            journeys = self.journey_source() if self.journey_source else []
            token.raise_if_cancelled("training")

            result = evaluate_model(self.algorithm(model_id), journeys, cancel_token=token)

            with self._lock:
                # Last chance to observe cancellation before publishing
                token.raise_if_cancelled("training")
                entry = self._entry(model_id)
                now = datetime.utcnow()
                fields = {
                    'status': 'deployed' if entry['is_active'] else 'ready',
                    'version': increment_version(entry['version']),
                    'last_trained': now,
                    'training_journeys': len(journeys),
                }
                if journeys:
                    fields['training_start'] = min(j.journey_start for j in journeys)
                    fields['training_end'] = max(j.last_touch.timestamp for j in journeys)
                if result is not None:
                    fields.update(
                        accuracy=result.accuracy,
                        precision=result.precision,
                        recall=result.recall,
                        f1_score=result.f1_score,
                    )

                self._persist(model_id, **fields)
                if result is not None:
                    self.record_accuracy(model_id, result.accuracy * 100, len(journeys), source='training', at=now)

                entry.update({k: v for k, v in fields.items() if k not in ('training_journeys', 'training_start', 'training_end')})
                entry['training_data']['journeys'] = len(journeys)
                entry['training_data']['time_range'] = {
                    'start': fields.get('training_start'),
                    'end': fields.get('training_end'),
                }
                snapshot = copy.deepcopy(entry)

            log.info(
                f"Training finished for {model_id}: v{snapshot['version']}, "
                f"accuracy {snapshot['accuracy']:.3f} on {len(journeys)} journeys"
            )
            return snapshot

        except Exception as e:
            with self._lock:
                entry = self._entries.get(model_id)
                if entry is not None:
                    status = prior['status']
                    if entry['is_active']:
                        status = 'deployed'
                    elif status == 'deployed':
                        status = 'ready'
                    restored = dict(prior, status=status)
                    self._persist(model_id, **restored)
                    entry.update(restored)
            if isinstance(e, AttributionEngineError):
                log.warning(f"Training for {model_id} stopped: {str(e)}")
            else:
                log.error(f"Training for {model_id} failed: {type(e).__name__}: {str(e)}")
            raise

        finally:
            with self._lock:
                self._training.pop(model_id, None)

    def training_handle(self, model_id: str) -> Optional[TrainingHandle]:
        return self._training.get(model_id)

    # ------------------------------------------------------------------
    # Accuracy history
    # ------------------------------------------------------------------

    def record_accuracy(
        self,
        model_id: str,
        accuracy_pct: float,
        journeys: int = 0,
        source: str = 'monitor',
        at: Optional[datetime] = None
    ):
        """Append one accuracy observation (percentage points)"""
        with session_scope(self.session_factory) as db:
            db.add(ModelAccuracySnapshot(
                model_id=model_id,
                accuracy=accuracy_pct,
                journeys=journeys,
                source=source,
                recorded_at=at or datetime.utcnow(),
            ))

    def accuracy_history(self, model_id: str, since: Optional[datetime] = None) -> List[dict]:
        """Accuracy observations for model_id, oldest first"""
        with session_scope(self.session_factory) as db:
            query = db.query(ModelAccuracySnapshot).filter(ModelAccuracySnapshot.model_id == model_id)
            if since is not None:
                query = query.filter(ModelAccuracySnapshot.recorded_at >= since)
            rows = query.order_by(ModelAccuracySnapshot.recorded_at, ModelAccuracySnapshot.id).all()
            return [
                {'accuracy': r.accuracy, 'journeys': r.journeys, 'source': r.source, 'recorded_at': r.recorded_at}
                for r in rows
            ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True):
        """Cancel in-flight training runs and stop the training pool"""
        with self._lock:
            handles = list(self._training.values())
        for handle in handles:
            handle.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
