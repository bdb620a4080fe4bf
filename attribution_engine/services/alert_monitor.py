"""
Drift / Alert Monitor

Periodically compares the attribution picture against its recent past and
raises severity-graded alerts:

- model_drift: champion accuracy fell over the lookback window
- budget_reallocation: a channel's attribution share moved between windows
- performance_drop: a channel's ROAS fell between windows
- channel_optimization: a channel earns noticeably better ROAS in one daypart
- attribution_anomaly: journeys could not be weighted by the champion

An unresolved alert is never raised twice for the same condition.
"""
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from attribution_engine.config import Settings, get_settings
from attribution_engine.exceptions import NotFoundError, PartialComputationError
from attribution_engine.models.alert import AttributionAlert
from attribution_engine.models.base import SessionLocal, session_scope
from attribution_engine.models.domain import CustomerJourney, DateRange
from attribution_engine.services.insight_aggregator import InsightAccumulator, build_insights
from attribution_engine.services.model_evaluation import evaluate_model
from attribution_engine.utils.helpers import safe_divide
from attribution_engine.utils.logger import log

DAYPARTS = (
    ('night', 0, 6),
    ('morning', 6, 12),
    ('afternoon', 12, 18),
    ('evening', 18, 24),
)


def daypart(ts: datetime) -> str:
    for name, start, end in DAYPARTS:
        if start <= ts.hour < end:
            return name
    return 'night'


def graded_severity(ratio: float, high_at: float, critical_at: float) -> str:
    """Severity from how many thresholds a change spans (ratio >= 1)"""
    if ratio >= critical_at:
        return 'critical'
    if ratio >= high_at:
        return 'high'
    return 'medium'


class AlertMonitor:
    """Raises and resolves attribution alerts"""

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
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries / resolution
    # ------------------------------------------------------------------

    def list(self, include_resolved: bool = False) -> List[dict]:
        """Alerts, newest first"""
        with session_scope(self.session_factory) as db:
            query = db.query(AttributionAlert)
            if not include_resolved:
                query = query.filter(AttributionAlert.resolved == False)  # noqa: E712
            rows = query.order_by(AttributionAlert.timestamp.desc(), AttributionAlert.id).all()
            return [r.to_dict() for r in rows]

    def get(self, alert_id: str) -> dict:
        with session_scope(self.session_factory) as db:
            row = db.get(AttributionAlert, alert_id)
            if row is None:
                raise NotFoundError(f"Alert '{alert_id}' not found")
            return row.to_dict()

    def resolve(self, alert_id: str, now: Optional[datetime] = None) -> dict:
        """Mark an alert resolved; resolving twice keeps the first resolution time"""
        with self._lock:
            with session_scope(self.session_factory) as db:
                row = db.get(AttributionAlert, alert_id)
                if row is None:
                    raise NotFoundError(f"Alert '{alert_id}' not found")
                if not row.resolved:
                    row.resolved = True
                    row.resolved_at = now or datetime.utcnow()
                    log.info(f"Resolved alert {alert_id} ({row.type})")
                return row.to_dict()

    # ------------------------------------------------------------------
    # Raising
    # ------------------------------------------------------------------

    def raise_alert(
        self,
        alert_type: str,
        severity: str,
        title: str,
        description: str,
        fingerprint: str,
        affected_channels: Optional[List[str]] = None,
        metrics: Optional[Dict[str, float]] = None,
        recommendations: Optional[List[str]] = None,
        action_required: bool = True,
        auto_resolve: bool = False,
        now: Optional[datetime] = None
    ) -> Optional[dict]:
        """Append an alert unless an unresolved one with the same fingerprint exists"""
        metrics = metrics or {}
        with self._lock:
            with session_scope(self.session_factory) as db:
                existing = db.query(AttributionAlert.id).filter(
                    AttributionAlert.fingerprint == fingerprint,
                    AttributionAlert.resolved == False  # noqa: E712
                ).first()
                if existing:
                    return None

                row = AttributionAlert(
                    id=f"alert_{uuid.uuid4().hex[:12]}",
                    timestamp=now or datetime.utcnow(),
                    type=alert_type,
                    severity=severity,
                    title=title,
                    description=description,
                    affected_channels=list(affected_channels or []),
                    metric_before=metrics.get('before'),
                    metric_after=metrics.get('after'),
                    metric_change=metrics.get('change'),
                    metric_threshold=metrics.get('threshold'),
                    recommendations=list(recommendations or []),
                    action_required=action_required,
                    auto_resolve=auto_resolve,
                    fingerprint=fingerprint,
                    resolved=False,
                )
                db.add(row)
                alert = row.to_dict()

        log.warning(f"[{severity.upper()}] {title}: {description}")
        return alert

    def _auto_resolve(self, active: Set[str], now: datetime) -> int:
        """Resolve auto-resolving alerts whose condition no longer holds"""
        resolved = 0
        with self._lock:
            with session_scope(self.session_factory) as db:
                rows = db.query(AttributionAlert).filter(
                    AttributionAlert.auto_resolve == True,  # noqa: E712
                    AttributionAlert.resolved == False  # noqa: E712
                ).all()
                for row in rows:
                    if row.fingerprint not in active:
                        row.resolved = True
                        row.resolved_at = now
                        resolved += 1
        if resolved:
            log.info(f"Auto-resolved {resolved} alerts")
        return resolved

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def evaluate(self, now: Optional[datetime] = None) -> List[dict]:
        """One monitoring tick; returns the alerts it raised"""
        now = now or datetime.utcnow()
        window = timedelta(days=self.settings.share_window_days)
        model_id = self.registry.champion_id

        current_range = DateRange(now - window, now)
        previous_range = DateRange(now - 2 * window, now - window)
        current_journeys = self.journey_source(current_range)
        previous_journeys = self.journey_source(previous_range)

        if current_journeys:
            try:
                result = evaluate_model(self.registry.algorithm(model_id), current_journeys)
            except PartialComputationError as e:
                # Counted as weighting failures below
                log.error(f"Evaluating {model_id} failed: {str(e)}")
                result = None
            if result is not None:
                self.registry.record_accuracy(model_id, result.accuracy * 100, len(current_journeys), at=now)

        current, current_errors = self._weigh(model_id, current_journeys)
        previous, previous_errors = self._weigh(model_id, previous_journeys)

        raised = []
        active: Set[str] = set()

        drift = self.check_model_drift(model_id, now)
        if drift:
            raised.append(drift)

        anomaly_fp = f"attribution_anomaly:{model_id}"
        if current_errors:
            active.add(anomaly_fp)
            alert = self._anomaly_alert(model_id, current_errors, len(current_journeys), anomaly_fp, now)
            if alert:
                raised.append(alert)

        raised.extend(self._check_channel_windows(current, previous, now))

        for alert, fingerprint in self._check_dayparts(current, now):
            active.add(fingerprint)
            if alert:
                raised.append(alert)

        self._auto_resolve(active, now)

        log.info(
            f"Drift check for {model_id}: {len(current)} current / {len(previous)} previous journeys, "
            f"{len(raised)} new alerts"
        )
        return raised

    def _weigh(self, model_id: str, journeys: List[CustomerJourney]) -> Tuple[List[CustomerJourney], int]:
        """Weighted journeys and the number that could not be weighted"""
        if not journeys:
            return [], 0
        try:
            fitted = self.registry.fit(model_id, journeys)
        except PartialComputationError as e:
            log.error(f"Fitting {model_id} failed: {str(e)}")
            return [], len(journeys)

        weighted, errors = [], 0
        for journey in journeys:
            try:
                weighted.append(journey.with_attribution(self.registry.weight(model_id, journey, fitted)))
            except PartialComputationError:
                errors += 1
        return weighted, errors

    def check_model_drift(self, model_id: str, now: Optional[datetime] = None) -> Optional[dict]:
        """Alert when accuracy dropped by the drift threshold within the lookback window"""
        now = now or datetime.utcnow()
        threshold = self.settings.drift_accuracy_threshold
        since = now - timedelta(hours=self.settings.drift_lookback_hours)

        history = [h for h in self.registry.accuracy_history(model_id, since=since) if h['recorded_at'] <= now]
        if len(history) < 2:
            return None

        before = history[0]['accuracy']
        after = history[-1]['accuracy']
        drop = before - after
        if drop < threshold:
            return None

        model_name = self.registry.get(model_id)['name']
        return self.raise_alert(
            alert_type='model_drift',
            severity=graded_severity(drop / threshold, high_at=2, critical_at=3),
            title='Model Performance Drift Detected',
            description=(
                f"{model_name} accuracy has dropped by {drop:.1f} points "
                f"over the last {self.settings.drift_lookback_hours} hours"
            ),
            fingerprint=f"model_drift:{model_id}",
            metrics={
                'before': before,
                'after': after,
                'change': round(after - before, 4),
                'threshold': threshold,
            },
            recommendations=[
                'Retrain model with recent data',
                'Check for data quality issues',
                'Consider ensemble fallback',
            ],
            now=now,
        )

    def _anomaly_alert(self, model_id, errors, total, fingerprint, now) -> Optional[dict]:
        rate = safe_divide(errors, total) * 100
        return self.raise_alert(
            alert_type='attribution_anomaly',
            severity='high' if rate >= 10 else 'medium',
            title='Attribution Weighting Failures',
            description=f"{errors} of {total} journeys could not be weighted by {model_id}",
            fingerprint=fingerprint,
            metrics={'before': 0.0, 'after': rate, 'change': rate, 'threshold': 0.0},
            recommendations=[
                'Check the model configuration',
                'Verify ensemble components are registered',
            ],
            auto_resolve=True,
            now=now,
        )

    def _check_channel_windows(
        self,
        current: List[CustomerJourney],
        previous: List[CustomerJourney],
        now: datetime
    ) -> List[dict]:
        """Attribution share shifts and ROAS drops between the previous and current window"""
        if not current or not previous:
            return []

        current_acc = InsightAccumulator.from_journeys(current)
        previous_acc = InsightAccumulator.from_journeys(previous)
        if current_acc.total_value <= 0 or previous_acc.total_value <= 0:
            return []

        current_insights = {i.channel_id: i for i in build_insights(current_acc, self.settings)}
        previous_insights = {i.channel_id: i for i in build_insights(previous_acc, self.settings)}

        raised = []
        share_threshold = self.settings.share_shift_threshold
        drop_threshold = self.settings.performance_drop_threshold

        for channel_id in sorted(set(current_insights) | set(previous_insights)):
            cur = current_insights.get(channel_id)
            prev = previous_insights.get(channel_id)
            before = prev.attribution_percentage if prev else 0.0
            after = cur.attribution_percentage if cur else 0.0
            shift = after - before
            name = (cur or prev).channel_name

            if abs(shift) >= share_threshold:
                direction = 'increased' if shift > 0 else 'decreased'
                alert = self.raise_alert(
                    alert_type='budget_reallocation',
                    severity=graded_severity(abs(shift) / share_threshold, high_at=1.5, critical_at=3),
                    title='Significant Attribution Shift Detected',
                    description=f"{name} attribution {direction} by {abs(shift):.1f} points",
                    fingerprint=f"budget_reallocation:{channel_id}",
                    affected_channels=[channel_id],
                    metrics={'before': before, 'after': after, 'change': shift, 'threshold': share_threshold},
                    recommendations=[
                        'Review recent campaign changes',
                        f"Rebalance budget {'towards' if shift > 0 else 'away from'} {name}",
                    ],
                    now=now,
                )
                if alert:
                    raised.append(alert)

            if cur and prev and prev.roas > 0:
                drop_pct = (prev.roas - cur.roas) / prev.roas * 100
                if drop_pct >= drop_threshold:
                    alert = self.raise_alert(
                        alert_type='performance_drop',
                        severity=graded_severity(drop_pct / drop_threshold, high_at=2, critical_at=3),
                        title=f"{name} Performance Drop",
                        description=f"{name} ROAS fell {drop_pct:.1f}% from {prev.roas:.2f}x to {cur.roas:.2f}x",
                        fingerprint=f"performance_drop:{channel_id}",
                        affected_channels=[channel_id],
                        metrics={'before': prev.roas, 'after': cur.roas, 'change': -drop_pct, 'threshold': drop_threshold},
                        recommendations=[
                            'Check creative fatigue and audience overlap',
                            'Review bids and targeting',
                        ],
                        now=now,
                    )
                    if alert:
                        raised.append(alert)

        return raised

    def _check_dayparts(self, journeys: List[CustomerJourney], now: datetime) -> List[Tuple[Optional[dict], str]]:
        """(alert or None, fingerprint) for every channel whose best daypart beats its overall ROAS"""
        revenue = defaultdict(float)
        cost = defaultdict(float)
        touches = defaultdict(int)
        names = {}

        for journey in journeys:
            per_channel_touches = defaultdict(int)
            for tp in journey.touchpoints:
                per_channel_touches[tp.channel_id] += 1
            for tp in journey.touchpoints:
                part = daypart(tp.timestamp)
                share = journey.revenue_distribution.get(tp.channel_id, 0.0) / per_channel_touches[tp.channel_id]
                for key in ((tp.channel_id, part), (tp.channel_id, None)):
                    revenue[key] += share
                    cost[key] += tp.cost
                    touches[key] += 1
                names.setdefault(tp.channel_id, tp.channel_name)

        threshold = self.settings.channel_optimization_threshold
        min_touches = self.settings.channel_optimization_min_touches
        results = []

        for channel_id in sorted(names):
            overall = safe_divide(revenue[(channel_id, None)], cost[(channel_id, None)])
            if overall <= 0:
                continue

            best = None
            for part, _, _ in DAYPARTS:
                key = (channel_id, part)
                if touches[key] < min_touches or cost[key] <= 0:
                    continue
                gain = (revenue[key] / cost[key] / overall - 1) * 100
                if gain >= threshold and (best is None or gain > best[1]):
                    best = (part, gain, revenue[key] / cost[key])
            if best is None:
                continue

            part, gain, part_roas = best
            fingerprint = f"channel_optimization:{channel_id}:{part}"
            name = names[channel_id]
            alert = self.raise_alert(
                alert_type='channel_optimization',
                severity='low',
                title=f"{name} Performance Improvement Opportunity",
                description=f"{name} shows {gain:.0f}% higher efficiency in {part} hours",
                fingerprint=fingerprint,
                affected_channels=[channel_id],
                metrics={'before': overall, 'after': part_roas, 'change': gain, 'threshold': threshold},
                recommendations=[
                    f"Shift {name} budget to {part} hours",
                    'Test dayparting strategies',
                ],
                action_required=False,
                auto_resolve=True,
                now=now,
            )
            results.append((alert, fingerprint))

        return results
