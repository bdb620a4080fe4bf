"""
Test doubles shared across test modules.
"""
from concurrent.futures import Executor, Future


class DeferredExecutor(Executor):
    """Holds submitted work until run_pending() is called"""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except BaseException as e:
                future.set_exception(e)

    def shutdown(self, wait=True, **kwargs):
        self.run_pending()


class RecordingScheduler:
    """Stands in for EvaluationScheduler and records what was (un)scheduled"""

    def __init__(self):
        self.scheduled = []
        self.cancelled = []
        self.running = False

    def schedule_experiment(self, experiment_id, evaluate):
        self.scheduled.append(experiment_id)

    def cancel_experiment(self, experiment_id):
        self.cancelled.append(experiment_id)

    def schedule_drift_check(self, func):
        self.scheduled.append('drift')

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False
