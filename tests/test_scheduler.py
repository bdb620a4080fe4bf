"""
Evaluation scheduler tests.
"""
import threading

import pytest

from attribution_engine.config import Settings
from attribution_engine.scheduler import DRIFT_JOB_ID, EvaluationScheduler, experiment_job_id


@pytest.fixture
def scheduler():
    scheduler = EvaluationScheduler(Settings(experiment_tick_minutes=5, drift_tick_minutes=15))
    yield scheduler
    scheduler.shutdown(wait=True)


def test_experiment_jobs_added_and_removed(scheduler):
    scheduler.schedule_experiment('exp_1', lambda experiment_id: None)
    scheduler.schedule_experiment('exp_2', lambda experiment_id: None)

    assert set(scheduler.job_ids()) == {'experiment_exp_1', 'experiment_exp_2'}

    scheduler.cancel_experiment('exp_1')

    assert scheduler.job_ids() == [experiment_job_id('exp_2')]


def test_cancel_unknown_experiment_is_harmless(scheduler):
    scheduler.cancel_experiment('exp_missing')
    assert scheduler.job_ids() == []


def test_drift_job(scheduler):
    scheduler.schedule_drift_check(lambda: None)
    scheduler.schedule_drift_check(lambda: None)

    assert scheduler.job_ids() == [DRIFT_JOB_ID]


def test_rescheduling_experiment_before_start_keeps_one_job(scheduler):
    for _ in range(3):
        scheduler.schedule_experiment('exp_1', lambda experiment_id: None)

    assert scheduler.job_ids() == [experiment_job_id('exp_1')]

    scheduler.start()

    assert scheduler.job_ids() == [experiment_job_id('exp_1')]


def test_rescheduling_after_start_keeps_one_job(scheduler):
    scheduler.start()
    scheduler.schedule_drift_check(lambda: None)
    scheduler.schedule_drift_check(lambda: None)

    assert scheduler.job_ids() == [DRIFT_JOB_ID]


def test_rescheduling_cancels_previous_tick(scheduler):
    scheduler.schedule_experiment('exp_1', lambda experiment_id: None)
    first_event = scheduler._events[experiment_job_id('exp_1')]

    scheduler.schedule_experiment('exp_1', lambda experiment_id: None)

    assert first_event.is_set()
    assert not scheduler._events[experiment_job_id('exp_1')].is_set()


def test_run_calls_job_with_args(scheduler):
    calls = []

    scheduler._run('job', threading.Event(), calls.append, ['exp_1'])

    assert calls == ['exp_1']


def test_cancelled_tick_does_not_run(scheduler):
    calls = []
    event = threading.Event()
    event.set()

    scheduler._run('job', event, calls.append, ['exp_1'])

    assert calls == []


def test_failing_tick_is_logged_not_raised(scheduler):
    def boom():
        raise RuntimeError("database locked")

    scheduler._run('job', threading.Event(), boom, [])


def test_start_and_shutdown(scheduler):
    scheduler.schedule_drift_check(lambda: None)
    scheduler.start()
    assert scheduler.running

    scheduler.shutdown(wait=True)

    assert not scheduler.running
    # Nothing can be scheduled or run after shutdown
    scheduler.schedule_experiment('exp_late', lambda experiment_id: None)
    calls = []
    scheduler._run('job', threading.Event(), calls.append, ['x'])
    assert calls == []
