"""
Shared fixtures: every test gets its own in-memory SQLite database.
"""
import os

# Must be set before attribution_engine.config is first imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import pytest

from attribution_engine.models.base import make_session_factory
from attribution_engine.services.engine import AttributionEngine
from attribution_engine.services.model_registry import ModelRegistry
from attribution_engine.services.touchpoint_store import TouchpointStore
from attribution_engine.utils.cache import clear_cache

from helpers import DeferredExecutor


@pytest.fixture(autouse=True)
def _clear_report_cache():
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def session_factory():
    return make_session_factory("sqlite://")


@pytest.fixture
def executor():
    return DeferredExecutor()


@pytest.fixture
def store(session_factory):
    return TouchpointStore(session_factory, attribution_window_days=30)


@pytest.fixture
def registry(session_factory, executor):
    return ModelRegistry(session_factory, journey_source=lambda: [], executor=executor)


@pytest.fixture
def engine(session_factory, executor):
    engine = AttributionEngine(session_factory=session_factory, training_executor=executor)
    yield engine
    engine.shutdown()
