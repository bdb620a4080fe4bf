"""
Attribution Report Builder

Builds the full attribution report for a date range: journeys from the
touchpoint store, weights from one model snapshot, channel insights,
recommendations, synergies, the model comparison and current alerts and
experiments.
"""
import concurrent.futures
import dataclasses
import uuid
from datetime import datetime
from typing import List, Mapping, Optional, Tuple

from attribution_engine.config import Settings, get_settings
from attribution_engine.exceptions import PartialComputationError, ValidationError
from attribution_engine.models.domain import (
    AttributionReport, CustomerJourney, DateRange, ModelComparison, summarize_journeys
)
from attribution_engine.services.insight_aggregator import InsightAccumulator, build_insights, recommend
from attribution_engine.services.synergy_analyzer import analyze_synergies
from attribution_engine.utils.cache import MISS, get_cached, set_cached
from attribution_engine.utils.cancellation import CancellationToken
from attribution_engine.utils.helpers import chunk_list, safe_divide
from attribution_engine.utils.logger import log

CACHE_PREFIX = "report:"


def advanced_metrics(journeys: List[CustomerJourney], total_cost: float) -> dict:
    """Derived report-wide metrics"""
    total_revenue = sum(j.total_value for j in journeys)
    cross_device = [
        j for j in journeys
        if len({tp.device_type for tp in j.touchpoints if tp.device_type}) > 1
    ]
    view_through = [
        j for j in journeys
        if j.converted and any(tp.touch_type in ('impression', 'view') for tp in j.touchpoints)
    ]
    return {
        'total_cost': total_cost,
        'overall_roas': safe_divide(total_revenue, total_cost),
        'cross_device_journeys': len(cross_device),
        'cross_device_revenue': sum(j.total_value for j in cross_device),
        'view_through_revenue': sum(j.total_value for j in view_through),
    }


class ReportBuilder:
    """Assembles AttributionReport objects"""

    def __init__(self, store, registry, experiments, alerts, settings: Optional[Settings] = None):
        self.store = store
        self.registry = registry
        self.experiments = experiments
        self.alerts = alerts
        self.settings = settings or get_settings()
        # Keeps two engines in one process from sharing cached reports
        self._cache_scope = uuid.uuid4().hex[:8]

    def build(
        self,
        date_range: DateRange,
        model_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> AttributionReport:
        """
        Build (or fetch from cache) the report for date_range

        The model is snapshotted once, so a champion change mid-build does
        not mix two models. Journeys that fail weighting are left out and
        counted in error_count. Raises OperationCancelled if cancel_token
        fires; nothing partial is returned or cached.
        """
        if not isinstance(date_range, DateRange):
            raise ValidationError("A DateRange is required")
        token = cancel_token or CancellationToken()

        model = self.registry.get(model_id) if model_id else self.registry.champion()
        model_id = model['id']

        cache_key = (
            f"{CACHE_PREFIX}{self._cache_scope}:{date_range.start.isoformat()}:{date_range.end.isoformat()}:"
            f"{model_id}:{model['version']}:{self.store.revision}"
        )
        cached = get_cached(cache_key)
        if cached is not MISS:
            log.debug(f"Report cache hit for {cache_key}")
            return self._refresh_live_sections(cache_key, cached)

        log.info(f"Generating attribution report {date_range.start} - {date_range.end} with {model_id}")

        journeys = self.store.journeys_in_range(date_range)
        token.raise_if_cancelled("report generation")

        try:
            fitted = self.registry.fit(model_id, journeys)
        except PartialComputationError as e:
            # Every journey then fails on its own and is counted below
            log.error(f"Fitting {model_id} failed: {str(e)}")
            fitted = {}
        token.raise_if_cancelled("report generation")

        weighted, accumulator, error_count = self._weigh_all(model_id, journeys, fitted, token)
        token.raise_if_cancelled("report generation")

        insights = build_insights(accumulator, self.settings)
        recommendations = recommend(insights, self.settings)
        synergies = analyze_synergies(weighted, self.settings)

        converted = [j for j in weighted if j.converted]
        top_journeys = sorted(converted, key=lambda j: (-j.total_value, j.journey_id))
        averages = summarize_journeys(weighted)
        alerts, experiments, comparison = self._live_sections()

        token.raise_if_cancelled("report generation")

        report = AttributionReport(
            report_id=f"report_{uuid.uuid4().hex[:12]}",
            generated_at=datetime.utcnow(),
            date_range=date_range,
            model_id=model_id,
            model_version=model['version'],
            total_journeys=len(weighted),
            total_conversions=len(converted),
            total_revenue=accumulator.total_value,
            avg_journey_length=averages['avg_journey_length'],
            avg_time_to_conversion=averages['avg_time_to_conversion'],
            model_accuracy=model['accuracy'] * 100,
            channel_insights=tuple(insights),
            top_performing_journeys=tuple(top_journeys[:self.settings.top_journeys_limit]),
            optimization_recommendations=tuple(recommendations),
            cross_channel_synergies=tuple(synergies),
            alerts=alerts,
            experiments=experiments,
            model_comparison=comparison,
            advanced_metrics=advanced_metrics(weighted, sum(i.total_cost for i in insights)),
            error_count=error_count,
        )

        set_cached(cache_key, report, seconds=self.settings.report_cache_seconds)
        log.info(
            f"Report {report.report_id}: {report.total_journeys} journeys, "
            f"{report.total_conversions} conversions, {len(insights)} channels, {error_count} errors"
        )
        return report

    def _live_sections(self) -> Tuple[tuple, tuple, ModelComparison]:
        """Alerts, experiments and model comparison as they stand right now"""
        experiments = self.experiments.list()
        running = [e for e in experiments if e['status'] == 'running']
        comparison = ModelComparison(
            models=tuple(
                {
                    'id': m['id'],
                    'name': m['name'],
                    'type': m['type'],
                    'accuracy': m['accuracy'],
                    'version': m['version'],
                    'status': m['status'],
                }
                for m in self.registry.list_models()
            ),
            champion=self.registry.champion_id,
            challenger=running[0]['treatment_model'] if running else None,
            experiment_running=bool(running),
        )
        return tuple(self.alerts.list()), tuple(experiments), comparison

    def _refresh_live_sections(self, cache_key: str, cached: AttributionReport) -> AttributionReport:
        """
        Cached journey analysis with current alerts, experiments and models

        The cached report is returned as is while those sections are unchanged.
        """
        alerts, experiments, comparison = self._live_sections()
        if (alerts, experiments, comparison) == (cached.alerts, cached.experiments, cached.model_comparison):
            return cached

        refreshed = dataclasses.replace(
            cached,
            report_id=f"report_{uuid.uuid4().hex[:12]}",
            generated_at=datetime.utcnow(),
            alerts=alerts,
            experiments=experiments,
            model_comparison=comparison,
        )
        set_cached(cache_key, refreshed, seconds=self.settings.report_cache_seconds)
        return refreshed

    def _weigh_all(
        self,
        model_id: str,
        journeys: List[CustomerJourney],
        fitted: Mapping,
        token: CancellationToken
    ) -> Tuple[List[CustomerJourney], InsightAccumulator, int]:
        """Weight journeys in parallel chunks and merge the results in chunk order"""
        chunks = chunk_list(journeys, max(1, self.settings.report_chunk_size))
        weighted: List[CustomerJourney] = []
        accumulator = InsightAccumulator()
        error_count = 0

        if not chunks:
            return weighted, accumulator, error_count

        workers = max(1, min(self.settings.report_workers, len(chunks)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="report") as pool:
            futures = [
                pool.submit(self._weigh_chunk, model_id, chunk, fitted, token)
                for chunk in chunks
            ]
            for future in futures:
                chunk_weighted, chunk_acc, chunk_errors = future.result()
                weighted.extend(chunk_weighted)
                accumulator.merge(chunk_acc)
                error_count += chunk_errors

        return weighted, accumulator, error_count

    def _weigh_chunk(
        self,
        model_id: str,
        journeys: List[CustomerJourney],
        fitted: Mapping,
        token: CancellationToken
    ) -> Tuple[List[CustomerJourney], InsightAccumulator, int]:
        weighted = []
        accumulator = InsightAccumulator()
        errors = 0

        for journey in journeys:
            token.raise_if_cancelled("report generation")
            try:
                weights = self.registry.weight(model_id, journey, fitted)
            except PartialComputationError as e:
                errors += 1
                log.warning(f"Excluding journey {journey.journey_id} from report: {str(e)}")
                continue
            journey = journey.with_attribution(weights)
            weighted.append(journey)
            accumulator.add(journey)

        return weighted, accumulator, errors
