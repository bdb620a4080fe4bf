"""
Experiment lifecycle, arm assignment and auto-completion tests.
"""
from datetime import timedelta

import pytest

from attribution_engine.exceptions import NotFoundError, StateConflictError, ValidationError
from attribution_engine.models.domain import ArmMetrics, DateRange
from attribution_engine.services.experiment_manager import (
    ExperimentManager, assign_arm, calculate_lift, conversion_confidence, revenue_significance
)

from helpers import RecordingScheduler
from synthetic import BASE_TIME, generate_touchpoints


@pytest.fixture
def manager(registry, session_factory):
    return ExperimentManager(registry, journey_source=lambda date_range: [], session_factory=session_factory)


@pytest.fixture
def running(manager):
    experiment = manager.create("Markov vs position", 'position_based', 'markov_chain_attribution', 20)
    return manager.start(experiment['id'], now=BASE_TIME)


def _arms(control_revenue, treatment_revenue):
    return (
        ArmMetrics(accuracy=82.0, revenue=control_revenue, conversions=40, journeys=100),
        ArmMetrics(accuracy=85.0, revenue=treatment_revenue, conversions=12, journeys=25),
    )


# ---------------------------------------------------------------------------
# Creation and state machine
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_create_starts_in_draft(self, manager):
        experiment = manager.create(" Shapley test ", 'position_based', 'shapley_value', 50)

        assert experiment['id'].startswith('exp_')
        assert experiment['status'] == 'draft'
        assert experiment['name'] == 'Shapley test'
        assert experiment['start_date'] is None
        assert [e['id'] for e in manager.list()] == [experiment['id']]

    @pytest.mark.parametrize("name,control,treatment,split", [
        ("", 'position_based', 'shapley_value', 50),
        ("bad split", 'position_based', 'shapley_value', 150),
        ("bad split", 'position_based', 'shapley_value', -1),
        ("same model", 'position_based', 'position_based', 50),
    ])
    def test_invalid_create_writes_nothing(self, manager, name, control, treatment, split):
        with pytest.raises(ValidationError):
            manager.create(name, control, treatment, split)
        assert manager.list() == []

    def test_unknown_model(self, manager):
        with pytest.raises(NotFoundError):
            manager.create("ghost", 'position_based', 'lstm_deep_attribution', 50)

    def test_start_twice_conflicts(self, manager, running):
        with pytest.raises(StateConflictError):
            manager.start(running['id'])

    def test_stop_draft_conflicts(self, manager):
        experiment = manager.create("draft", 'linear', 'last_touch', 50)
        with pytest.raises(StateConflictError):
            manager.stop(experiment['id'])

    def test_stop_with_winner(self, manager, running):
        stopped = manager.stop(running['id'], winner='control', now=BASE_TIME + timedelta(days=2))

        assert stopped['status'] == 'completed'
        assert stopped['winner'] == 'control'
        assert stopped['end_date'] == BASE_TIME + timedelta(days=2)

    def test_stop_with_unknown_winner(self, manager, running):
        with pytest.raises(ValidationError):
            manager.stop(running['id'], winner='both')
        assert manager.get(running['id'])['status'] == 'running'

    def test_cancel_is_terminal(self, manager, running):
        manager.cancel(running['id'])

        with pytest.raises(StateConflictError):
            manager.cancel(running['id'])
        with pytest.raises(StateConflictError):
            manager.start(running['id'])

    def test_get_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.get('exp_missing')

    def test_scheduler_follows_lifecycle(self, manager):
        scheduler = RecordingScheduler()
        manager.scheduler = scheduler
        experiment = manager.create("scheduled", 'linear', 'last_touch', 50)

        manager.start(experiment['id'])
        manager.stop(experiment['id'])

        assert scheduler.scheduled == [experiment['id']]
        assert scheduler.cancelled == [experiment['id']]


# ---------------------------------------------------------------------------
# Lift and statistics
# ---------------------------------------------------------------------------

def test_lift_is_revenue_ratio():
    assert calculate_lift(100.0, 110.0) == pytest.approx(10.0)
    assert calculate_lift(500.0, 500.0) == pytest.approx(0.0)
    assert calculate_lift(200.0, 150.0) == pytest.approx(-25.0)


@pytest.mark.parametrize("control", [0.0, -10.0])
def test_lift_without_control_revenue(control):
    assert calculate_lift(control, 100.0) == 0.0


def test_lift_ignores_traffic_split(manager):
    experiment = manager.create("Heavy treatment", 'position_based', 'shapley_value', 80)
    manager.start(experiment['id'], now=BASE_TIME)
    control = ArmMetrics(accuracy=82.0, revenue=100.0, conversions=5, journeys=20)
    treatment = ArmMetrics(accuracy=85.0, revenue=110.0, conversions=20, journeys=80)

    done = manager.record_metrics(experiment['id'], control, treatment, 96.0, 90.0, at=BASE_TIME + timedelta(days=8))

    assert done['metrics']['lift'] == pytest.approx(10.0)
    assert done['status'] == 'completed'
    assert done['winner'] == 'treatment'


def test_arm_assignment_is_stable_and_respects_split():
    customers = [f"cust_{n}" for n in range(1000)]

    assert all(assign_arm('exp_x', c, 0) == 'control' for c in customers)
    assert all(assign_arm('exp_x', c, 100) == 'treatment' for c in customers)

    treatment = [c for c in customers if assign_arm('exp_x', c, 30) == 'treatment']
    assert 220 < len(treatment) < 380
    assert treatment == [c for c in customers if assign_arm('exp_x', c, 30) == 'treatment']


def test_revenue_significance():
    control = [100.0, 110.0, 90.0, 105.0, 95.0] * 10
    treatment = [200.0, 210.0, 190.0, 205.0, 195.0] * 10

    assert revenue_significance(control, treatment) > 99
    assert revenue_significance(control, control) < 1
    assert revenue_significance([100.0], treatment) == 0.0


def test_conversion_confidence():
    assert conversion_confidence(10, 100, 40, 100) > 99
    assert conversion_confidence(10, 100, 10, 100) == pytest.approx(0.0)
    assert conversion_confidence(0, 0, 10, 100) == 0.0


# ---------------------------------------------------------------------------
# Metric recording and auto-completion
# ---------------------------------------------------------------------------

class TestAutoCompletion:

    def test_completes_once_with_treatment_winner(self, manager, running):
        scheduler = RecordingScheduler()
        manager.scheduler = scheduler
        control, treatment = _arms(800.0, 880.0)

        done = manager.record_metrics(running['id'], control, treatment, 97.0, 90.0, at=BASE_TIME + timedelta(days=8))

        assert done['status'] == 'completed'
        assert done['winner'] == 'treatment'
        assert done['metrics']['lift'] == pytest.approx(10.0)
        assert done['evaluations'] == 1
        assert scheduler.cancelled == [running['id']]

        with pytest.raises(StateConflictError):
            manager.record_metrics(running['id'], control, treatment, 97.0, 90.0, at=BASE_TIME + timedelta(days=9))

        # A late scheduled tick is a no-op
        late = manager.evaluate(running['id'], now=BASE_TIME + timedelta(days=9))
        assert late['evaluations'] == 1
        assert len(manager.snapshots(running['id'])) == 1

    def test_insufficient_lift_keeps_control(self, manager, running):
        control, treatment = _arms(800.0, 832.0)

        done = manager.record_metrics(running['id'], control, treatment, 99.0, 90.0, at=BASE_TIME + timedelta(days=8))

        assert done['status'] == 'completed'
        assert done['winner'] == 'control'

    def test_too_early_to_complete(self, manager, running):
        control, treatment = _arms(800.0, 880.0)

        result = manager.record_metrics(running['id'], control, treatment, 99.0, 90.0, at=BASE_TIME + timedelta(days=3))

        assert result['status'] == 'running'
        assert result['winner'] is None

    def test_not_significant_keeps_running(self, manager, running):
        control, treatment = _arms(800.0, 400.0)

        result = manager.record_metrics(running['id'], control, treatment, 80.0, 90.0, at=BASE_TIME + timedelta(days=20))

        assert result['status'] == 'running'

    def test_snapshots_are_appended_in_order(self, manager, running):
        control, treatment = _arms(800.0, 840.0)
        for day in (1, 2, 3):
            manager.record_metrics(running['id'], control, treatment, 50.0, 50.0, at=BASE_TIME + timedelta(days=day))

        snapshots = manager.snapshots(running['id'])

        assert [s['recorded_at'] for s in snapshots] == [BASE_TIME + timedelta(days=d) for d in (1, 2, 3)]
        assert snapshots[0]['control']['journeys'] == 100
        assert manager.get(running['id'])['evaluations'] == 3

    def test_draft_rejects_metrics(self, manager):
        experiment = manager.create("draft", 'linear', 'last_touch', 50)
        control, treatment = _arms(1.0, 1.0)
        with pytest.raises(StateConflictError):
            manager.record_metrics(experiment['id'], control, treatment, 99.0, 99.0)


def test_evaluate_splits_stored_journeys(engine):
    engine.ingest_touchpoints(generate_touchpoints(120))
    experiment = engine.create_experiment("tick", 'position_based', 'linear', 50)
    engine.experiments.start(experiment['id'], now=BASE_TIME - timedelta(days=1))
    now = BASE_TIME + timedelta(days=20)

    result = engine.evaluate_experiment(experiment['id'], now=now)

    assert result['evaluations'] == 1
    snapshot = engine.experiments.snapshots(experiment['id'])[0]
    in_range = engine.store.journeys_in_range(DateRange(BASE_TIME - timedelta(days=1), now))
    assert snapshot['control']['journeys'] + snapshot['treatment']['journeys'] == len(in_range)
    assert snapshot['control']['journeys'] > 0 and snapshot['treatment']['journeys'] > 0
    assert 0 <= snapshot['treatment']['accuracy'] <= 100


def test_evaluate_before_start_time_is_noop(manager, running):
    result = manager.evaluate(running['id'], now=BASE_TIME)

    assert result['evaluations'] == 0
    assert manager.snapshots(running['id']) == []
