"""
Scheduler for periodic attribution evaluation

Uses APScheduler to run experiment evaluation ticks and the drift check.
Every job has its own cancel event, checked when a tick starts, so a job
removed while a tick is queued never runs it.
"""
import threading
from typing import Callable, Dict

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from attribution_engine.config import Settings, get_settings
from attribution_engine.utils.logger import log

DRIFT_JOB_ID = 'attribution_drift_check'


def experiment_job_id(experiment_id: str) -> str:
    return f"experiment_{experiment_id}"


class EvaluationScheduler:
    """Background jobs for experiment ticks and drift checks"""

    def __init__(self, settings: Settings = None):
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler()
        self._events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("Scheduler started")

    def shutdown(self, wait: bool = True):
        """Stop all jobs; with wait=True no tick is running once this returns"""
        self._stopped.set()
        with self._lock:
            for event in self._events.values():
                event.set()
            self._events.clear()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        log.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def job_ids(self):
        return [job.id for job in self.scheduler.get_jobs()]

    def _add(self, job_id: str, name: str, func: Callable, minutes: int, args=None):
        if self._stopped.is_set():
            log.warning(f"Scheduler is shut down, not scheduling {job_id}")
            return

        event = threading.Event()
        with self._lock:
            previous = self._events.pop(job_id, None)
            if previous:
                previous.set()
            self._events[job_id] = event

        # Jobs added before start() sit in a pending list that replace_existing does not dedupe
        self._remove_job(job_id)
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            name=name,
            args=[job_id, event, func, list(args or [])],
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

    def _remove(self, job_id: str):
        with self._lock:
            event = self._events.pop(job_id, None)
        if event:
            event.set()
        self._remove_job(job_id)

    def _remove_job(self, job_id: str):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _run(self, job_id: str, event: threading.Event, func: Callable, args: list):
        if event.is_set() or self._stopped.is_set():
            return
        try:
            func(*args)
        except Exception as e:
            # One failed tick must not kill the job
            log.error(f"Scheduled job {job_id} failed: {type(e).__name__}: {str(e)}")

    # Jobs

    def schedule_drift_check(self, func: Callable):
        self._add(
            DRIFT_JOB_ID,
            'Attribution Drift Check',
            func,
            self.settings.drift_tick_minutes
        )
        log.info(f"Drift check scheduled every {self.settings.drift_tick_minutes} minutes")

    def schedule_experiment(self, experiment_id: str, evaluate: Callable):
        self._add(
            experiment_job_id(experiment_id),
            f'Experiment {experiment_id} Evaluation',
            evaluate,
            self.settings.experiment_tick_minutes,
            args=[experiment_id]
        )
        log.info(f"Experiment {experiment_id} evaluation scheduled every {self.settings.experiment_tick_minutes} minutes")

    def cancel_experiment(self, experiment_id: str):
        self._remove(experiment_job_id(experiment_id))
        log.info(f"Experiment {experiment_id} evaluation unscheduled")
