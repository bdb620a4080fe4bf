"""
Report builder tests: conservation, partial failures, cancellation and caching.
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from attribution_engine.config import Settings
from attribution_engine.exceptions import NotFoundError, OperationCancelled, PartialComputationError, ValidationError
from attribution_engine.models.domain import CustomerJourney, DateRange
from attribution_engine.services.engine import AttributionEngine
from attribution_engine.services.report_builder import advanced_metrics
from attribution_engine.utils import cache
from attribution_engine.utils.cancellation import CancellationToken

from helpers import DeferredExecutor
from synthetic import BASE_TIME, generate_touchpoints, touch

RANGE = DateRange(BASE_TIME - timedelta(days=1), BASE_TIME + timedelta(days=30))


@pytest.fixture
def loaded(engine):
    engine.ingest_touchpoints(generate_touchpoints(80))
    return engine


def _engine_with(session_factory, **overrides):
    settings = Settings(enable_scheduler=False, **overrides)
    engine = AttributionEngine(session_factory=session_factory, settings=settings, training_executor=DeferredExecutor())
    engine.ingest_touchpoints(generate_touchpoints(80))
    return engine


# ---------------------------------------------------------------------------
# Report contents
# ---------------------------------------------------------------------------

class TestReportContents:

    def test_attributed_revenue_is_conserved(self, loaded):
        report = loaded.generate_report(RANGE)

        converted_value = sum(j.total_value for j in loaded.store.journeys_in_range(RANGE))
        assert report.error_count == 0
        assert report.total_journeys == len(loaded.store.journeys_in_range(RANGE))
        assert report.total_revenue == pytest.approx(converted_value)
        assert sum(i.attributed_revenue for i in report.channel_insights) == pytest.approx(converted_value)

    def test_uses_champion_by_default(self, loaded):
        report = loaded.generate_report(RANGE)

        assert report.model_id == 'position_based'
        assert report.model_version == '2.1.0'
        assert report.model_accuracy == pytest.approx(82.0)
        assert report.model_comparison.champion == 'position_based'
        assert report.model_comparison.challenger is None

    def test_explicit_model(self, loaded):
        report = loaded.generate_report(RANGE, model_id='markov_chain_attribution')

        assert report.model_id == 'markov_chain_attribution'
        assert sum(i.attributed_revenue for i in report.channel_insights) == pytest.approx(report.total_revenue)

    def test_unknown_model(self, loaded):
        with pytest.raises(NotFoundError):
            loaded.generate_report(RANGE, model_id='lstm_deep_attribution')

    def test_invalid_range(self, loaded):
        with pytest.raises(ValidationError):
            loaded.generate_report((BASE_TIME, BASE_TIME + timedelta(days=1)))

    def test_empty_range(self, loaded):
        report = loaded.generate_report(DateRange(BASE_TIME - timedelta(days=90), BASE_TIME - timedelta(days=60)))

        assert report.total_journeys == 0
        assert report.channel_insights == ()
        assert report.avg_journey_length == 0.0
        assert report.advanced_metrics['overall_roas'] == 0.0

    def test_top_journeys_capped_and_ordered(self, session_factory):
        engine = _engine_with(session_factory, top_journeys_limit=3)

        report = engine.generate_report(RANGE)

        values = [j.total_value for j in report.top_performing_journeys]
        assert len(values) == 3
        assert values == sorted(values, reverse=True)
        assert all(j.converted for j in report.top_performing_journeys)
        engine.shutdown()

    def test_running_experiment_is_challenger(self, loaded):
        experiment = loaded.create_experiment("challenger", 'position_based', 'shapley_value', 25)
        loaded.start_experiment(experiment['id'])

        report = loaded.generate_report(RANGE)

        assert report.model_comparison.experiment_running
        assert report.model_comparison.challenger == 'shapley_value'
        assert [e['id'] for e in report.experiments] == [experiment['id']]

    def test_open_alerts_are_included(self, loaded):
        loaded.alerts.raise_alert('model_drift', 'medium', 'Drift', 'accuracy fell', fingerprint='fp')

        report = loaded.generate_report(RANGE)

        assert [a['type'] for a in report.alerts] == ['model_drift']

    def test_to_dict_summarizes_journeys(self, loaded):
        data = loaded.generate_report(RANGE).to_dict()

        first = data['top_performing_journeys'][0]
        assert set(first) >= {'journey_id', 'journey_path', 'revenue_distribution'}
        assert data['model_comparison']['champion'] == 'position_based'

    def test_chunking_does_not_change_results(self, session_factory):
        small_chunks = _engine_with(session_factory, report_chunk_size=7, report_workers=3)
        one_chunk = AttributionEngine(
            session_factory=session_factory,
            settings=Settings(enable_scheduler=False, report_chunk_size=10_000, report_workers=1),
        )

        a = small_chunks.generate_report(RANGE)
        b = one_chunk.generate_report(RANGE)

        assert [i.channel_id for i in a.channel_insights] == [i.channel_id for i in b.channel_insights]
        for x, y in zip(a.channel_insights, b.channel_insights):
            assert x.attributed_revenue == pytest.approx(y.attributed_revenue)
            assert x.total_touchpoints == y.total_touchpoints
        assert [j.journey_id for j in a.top_performing_journeys] == [j.journey_id for j in b.top_performing_journeys]
        small_chunks.shutdown()
        one_chunk.shutdown()


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------

def test_failed_journeys_are_counted_and_excluded(loaded, monkeypatch):
    journeys = loaded.store.journeys_in_range(RANGE)
    broken = {j.customer_id for j in journeys[:5]}
    expected_errors = sum(1 for j in journeys if j.customer_id in broken)
    original = loaded.registry.weight

    def flaky_weight(model_id, journey, fitted=None):
        if journey.customer_id in broken:
            raise PartialComputationError("bad journey", customer_id=journey.customer_id)
        return original(model_id, journey, fitted)

    monkeypatch.setattr(loaded.registry, 'weight', flaky_weight)

    report = loaded.generate_report(RANGE)

    assert report.error_count == expected_errors
    assert report.total_journeys == len(journeys) - expected_errors
    assert sum(i.attributed_revenue for i in report.channel_insights) == pytest.approx(report.total_revenue)


def test_cancelled_build_returns_and_caches_nothing(loaded):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        loaded.generate_report(RANGE, cancel_token=token)

    report = loaded.generate_report(RANGE)
    assert report.total_journeys > 0


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------

class TestCaching:

    def test_same_request_hits_cache(self, loaded):
        assert loaded.generate_report(RANGE) is loaded.generate_report(RANGE)

    def test_ingest_invalidates(self, loaded):
        first = loaded.generate_report(RANGE)

        loaded.ingest_touchpoint(touch('late', 'email', BASE_TIME + timedelta(days=3), is_conversion=True, value=50.0))
        second = loaded.generate_report(RANGE)

        assert second is not first
        assert second.total_journeys == first.total_journeys + 1

    def test_model_is_part_of_key(self, loaded):
        assert loaded.generate_report(RANGE) is not loaded.generate_report(RANGE, model_id='linear')

    def test_engines_do_not_share_reports(self, loaded, session_factory):
        other = AttributionEngine(session_factory=session_factory, training_executor=DeferredExecutor())

        assert other.generate_report(RANGE) is not loaded.generate_report(RANGE)
        other.shutdown()

    def test_cached_report_shows_current_alerts_and_experiments(self, loaded):
        alert = loaded.alerts.raise_alert('model_drift', 'medium', 'Drift', 'accuracy fell', fingerprint='fp')
        first = loaded.generate_report(RANGE)
        assert len(first.alerts) == 1

        loaded.resolve_alert(alert['id'])
        experiment = loaded.create_experiment("challenger", 'position_based', 'shapley_value', 25)
        loaded.start_experiment(experiment['id'])
        second = loaded.generate_report(RANGE)

        assert second.alerts == ()
        assert [e['id'] for e in second.experiments] == [experiment['id']]
        assert second.model_comparison.experiment_running
        assert second.model_comparison.challenger == 'shapley_value'
        # Journey analysis still comes from the cache
        assert second.channel_insights is first.channel_insights
        assert loaded.generate_report(RANGE) is second

    def test_champion_switch_shows_in_cached_comparison(self, loaded):
        loaded.generate_report(RANGE, model_id='linear')

        loaded.set_active_model('shapley_value')

        assert loaded.generate_report(RANGE, model_id='linear').model_comparison.champion == 'shapley_value'


def test_expired_entries_are_swept_on_write(monkeypatch):
    clock = {'now': 1000.0}
    monkeypatch.setattr(cache, 'time', SimpleNamespace(time=lambda: clock['now']))
    cache.set_cached('report:a', 'old', seconds=10)
    cache.set_cached('report:b', 'old', seconds=100)

    clock['now'] = 1050.0
    cache.set_cached('report:c', 'new', seconds=10)

    assert cache.cache_size() == 2
    assert cache.get_cached('report:a') is cache.MISS
    assert cache.get_cached('report:b') == 'old'


# ---------------------------------------------------------------------------
# Advanced metrics
# ---------------------------------------------------------------------------

def test_advanced_metrics():
    cross_device = CustomerJourney('c1', (
        touch('c1', 'meta_ads', BASE_TIME, device_type='mobile').at_position(1),
        touch('c1', 'google_search', BASE_TIME + timedelta(hours=1), is_conversion=True, value=120.0).at_position(2),
    ))
    view_through = CustomerJourney('c2', (
        touch('c2', 'tiktok_ads', BASE_TIME, touch_type='impression').at_position(1),
        touch('c2', 'direct', BASE_TIME + timedelta(hours=3), is_conversion=True, value=80.0).at_position(2),
    ))

    metrics = advanced_metrics([cross_device, view_through], total_cost=40.0)

    assert metrics['overall_roas'] == pytest.approx(5.0)
    assert metrics['cross_device_journeys'] == 1
    assert metrics['cross_device_revenue'] == pytest.approx(120.0)
    assert metrics['view_through_revenue'] == pytest.approx(80.0)
