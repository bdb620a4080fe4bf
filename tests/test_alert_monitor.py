"""
Alert monitor tests: drift, attribution shifts, dayparting and anomalies.
"""
from datetime import timedelta

import pytest

from attribution_engine.exceptions import NotFoundError, PartialComputationError
from attribution_engine.services.alert_monitor import daypart, graded_severity
from attribution_engine.services.attribution_models import LinearModel, build_algorithm

from synthetic import BASE_TIME, path_touches

NOW = BASE_TIME + timedelta(days=14)


def _singles(engine, prefix, channel, count, start, value=100.0, cost=10.0):
    """One single-touch converting journey per customer, a day apart"""
    touches = []
    for n in range(count):
        touches += path_touches(
            f"{prefix}_{n}", [channel], start=start + timedelta(days=n), value=value, cost=cost,
            id_prefix=f"{prefix}_{n}",
        )
    engine.ingest_touchpoints(touches)


def _of_type(alerts, alert_type):
    return [a for a in alerts if a['type'] == alert_type]


# ---------------------------------------------------------------------------
# Model drift
# ---------------------------------------------------------------------------

class TestModelDrift:

    def test_drop_over_threshold_raises_one_alert(self, engine):
        engine.registry.record_accuracy('position_based', 89.3, at=NOW - timedelta(hours=20))
        engine.registry.record_accuracy('position_based', 86.1, at=NOW - timedelta(hours=1))

        raised = engine.run_drift_check(NOW)

        assert len(raised) == 1
        alert = raised[0]
        assert alert['type'] == 'model_drift'
        assert alert['severity'] == 'medium'
        assert alert['resolved'] is False
        assert alert['metrics']['before'] == pytest.approx(89.3)
        assert alert['metrics']['after'] == pytest.approx(86.1)
        assert alert['metrics']['threshold'] == 3.0

        # Same condition, still unresolved
        assert engine.run_drift_check(NOW + timedelta(minutes=5)) == []
        assert len(engine.list_alerts()) == 1

    @pytest.mark.parametrize("drop,severity", [(6.5, 'high'), (9.5, 'critical')])
    def test_severity_grows_with_drop(self, engine, drop, severity):
        engine.registry.record_accuracy('position_based', 90.0, at=NOW - timedelta(hours=10))
        engine.registry.record_accuracy('position_based', 90.0 - drop, at=NOW - timedelta(hours=2))

        raised = engine.run_drift_check(NOW)

        assert [a['severity'] for a in raised] == [severity]

    def test_small_drop_is_ignored(self, engine):
        engine.registry.record_accuracy('position_based', 88.0, at=NOW - timedelta(hours=10))
        engine.registry.record_accuracy('position_based', 85.5, at=NOW - timedelta(hours=2))

        assert engine.run_drift_check(NOW) == []

    def test_points_outside_lookback_are_ignored(self, engine):
        engine.registry.record_accuracy('position_based', 95.0, at=NOW - timedelta(hours=30))
        engine.registry.record_accuracy('position_based', 86.0, at=NOW - timedelta(hours=2))

        assert engine.run_drift_check(NOW) == []

    def test_only_champion_is_checked(self, engine):
        engine.registry.record_accuracy('linear', 95.0, at=NOW - timedelta(hours=10))
        engine.registry.record_accuracy('linear', 70.0, at=NOW - timedelta(hours=2))

        assert engine.run_drift_check(NOW) == []

    def test_resolved_drift_can_fire_again(self, engine):
        engine.registry.record_accuracy('position_based', 90.0, at=NOW - timedelta(hours=10))
        engine.registry.record_accuracy('position_based', 80.0, at=NOW - timedelta(hours=2))
        first = engine.run_drift_check(NOW)[0]

        engine.alerts.resolve(first['id'], now=NOW)
        again = engine.run_drift_check(NOW + timedelta(minutes=1))

        assert len(again) == 1
        assert again[0]['id'] != first['id']


# ---------------------------------------------------------------------------
# Resolution and dedup
# ---------------------------------------------------------------------------

class TestResolution:

    def test_resolve_is_idempotent(self, engine):
        alert = engine.alerts.raise_alert('model_drift', 'low', 't', 'd', fingerprint='fp', now=NOW)

        first = engine.alerts.resolve(alert['id'], now=NOW + timedelta(hours=1))
        second = engine.alerts.resolve(alert['id'], now=NOW + timedelta(hours=5))

        assert first['resolved'] and second['resolved']
        assert second['resolved_at'] == first['resolved_at'] == NOW + timedelta(hours=1)
        assert engine.list_alerts() == []
        assert len(engine.list_alerts(include_resolved=True)) == 1

    def test_resolve_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.resolve_alert('alert_missing')

    def test_duplicate_fingerprint_is_suppressed(self, engine):
        assert engine.alerts.raise_alert('model_drift', 'low', 't', 'd', fingerprint='fp', now=NOW)
        assert engine.alerts.raise_alert('model_drift', 'high', 't', 'd', fingerprint='fp', now=NOW) is None

    def test_newest_first(self, engine):
        older = engine.alerts.raise_alert('model_drift', 'low', 'old', 'd', fingerprint='a', now=NOW)
        newer = engine.alerts.raise_alert('model_drift', 'low', 'new', 'd', fingerprint='b', now=NOW + timedelta(hours=1))

        assert [a['id'] for a in engine.list_alerts()] == [newer['id'], older['id']]


# ---------------------------------------------------------------------------
# Channel windows
# ---------------------------------------------------------------------------

class TestChannelWindows:

    def test_share_shift_raises_budget_reallocation(self, engine):
        # Previous week 50/50, current week 80/20
        _singles(engine, 'pe', 'email', 5, BASE_TIME + timedelta(days=1))
        _singles(engine, 'pm', 'meta_ads', 5, BASE_TIME + timedelta(days=1))
        _singles(engine, 'ce', 'email', 4, BASE_TIME + timedelta(days=8))
        _singles(engine, 'ce2', 'email', 4, BASE_TIME + timedelta(days=8, hours=2))
        _singles(engine, 'cm', 'meta_ads', 2, BASE_TIME + timedelta(days=8))

        raised = _of_type(engine.run_drift_check(NOW), 'budget_reallocation')

        by_channel = {a['affected_channels'][0]: a for a in raised}
        assert set(by_channel) == {'email', 'meta_ads'}
        assert by_channel['email']['metrics']['change'] == pytest.approx(30.0)
        assert by_channel['meta_ads']['metrics']['change'] == pytest.approx(-30.0)
        assert by_channel['email']['severity'] == 'critical'

    def test_roas_drop_raises_performance_drop(self, engine):
        _singles(engine, 'prev', 'email', 5, BASE_TIME + timedelta(days=1), cost=10.0)
        _singles(engine, 'cur', 'email', 5, BASE_TIME + timedelta(days=8), cost=20.0)

        raised = engine.run_drift_check(NOW)

        drops = _of_type(raised, 'performance_drop')
        assert len(drops) == 1
        assert drops[0]['severity'] == 'high'
        assert drops[0]['metrics']['before'] == pytest.approx(10.0)
        assert drops[0]['metrics']['after'] == pytest.approx(5.0)
        assert _of_type(raised, 'budget_reallocation') == []

    def test_stable_channels_raise_nothing(self, engine):
        _singles(engine, 'prev', 'email', 5, BASE_TIME + timedelta(days=1))
        _singles(engine, 'cur', 'email', 5, BASE_TIME + timedelta(days=8))

        raised = engine.run_drift_check(NOW)

        assert _of_type(raised, 'budget_reallocation') == []
        assert _of_type(raised, 'performance_drop') == []


# ---------------------------------------------------------------------------
# Dayparting and anomalies (auto-resolving)
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("hour,expected", [(0, 'night'), (5, 'night'), (6, 'morning'), (13, 'afternoon'), (23, 'evening')])
def test_daypart(hour, expected):
    assert daypart(BASE_TIME.replace(hour=hour)) == expected


def test_graded_severity():
    assert graded_severity(1.0, high_at=2, critical_at=3) == 'medium'
    assert graded_severity(2.0, high_at=2, critical_at=3) == 'high'
    assert graded_severity(3.5, high_at=2, critical_at=3) == 'critical'


def test_evening_efficiency_raises_then_auto_resolves(engine):
    _singles(engine, 'eve', 'meta_ads', 5, BASE_TIME + timedelta(days=8, hours=10), value=300.0)
    _singles(engine, 'morn', 'meta_ads', 5, BASE_TIME + timedelta(days=8), value=100.0)

    raised = _of_type(engine.run_drift_check(NOW), 'channel_optimization')

    assert len(raised) == 1
    alert = raised[0]
    assert alert['severity'] == 'low'
    assert alert['auto_resolve'] is True
    assert alert['action_required'] is False
    assert 'evening' in alert['description']
    assert alert['metrics']['change'] == pytest.approx(50.0)

    # A tick with no journeys in the window clears the condition
    engine.run_drift_check(NOW + timedelta(days=30))

    assert engine.alerts.get(alert['id'])['resolved'] is True


def test_weighting_failures_raise_anomaly_until_they_stop(engine, monkeypatch):
    _singles(engine, 'cur', 'email', 5, BASE_TIME + timedelta(days=8))

    def failing_weight(model_id, journey, fitted=None):
        raise PartialComputationError("component missing", customer_id=journey.customer_id)

    monkeypatch.setattr(engine.registry, 'weight', failing_weight)
    raised = _of_type(engine.run_drift_check(NOW), 'attribution_anomaly')

    assert len(raised) == 1
    assert raised[0]['severity'] == 'high'
    assert raised[0]['metrics']['after'] == pytest.approx(100.0)

    monkeypatch.undo()
    engine.run_drift_check(NOW + timedelta(minutes=10))

    assert engine.alerts.get(raised[0]['id'])['resolved'] is True


def test_broken_ensemble_champion_raises_anomaly(engine, monkeypatch):
    _singles(engine, 'cur', 'email', 5, BASE_TIME + timedelta(days=8))
    broken = build_algorithm(
        'ensemble', {'components': {'linear': 0.5, 'gone': 0.5}}, resolve={'linear': LinearModel()}.get
    )
    monkeypatch.setitem(engine.registry._algorithms, 'position_based', broken)

    raised = _of_type(engine.run_drift_check(NOW), 'attribution_anomaly')

    assert len(raised) == 1
    assert raised[0]['severity'] == 'high'
    assert engine.registry.accuracy_history('position_based') == []
