"""
Attribution Report API Endpoints
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from attribution_engine.api.deps import get_engine, http_error
from attribution_engine.exceptions import AttributionEngineError
from attribution_engine.models.domain import DateRange
from attribution_engine.utils.helpers import calculate_date_range
from attribution_engine.utils.logger import log

router = APIRouter(prefix="/attribution", tags=["reports"])


@router.get("/report")
def get_attribution_report(
    start: Optional[datetime] = Query(None, description="Range start (defaults to `days` before end)"),
    end: Optional[datetime] = Query(None, description="Range end (defaults to now)"),
    days: int = Query(30, ge=1, le=365, description="Number of days to analyze when start is omitted"),
    model_id: Optional[str] = Query(None, description="Model to attribute with (defaults to the active model)"),
    engine=Depends(get_engine)
):
    """
    Full multi-touch attribution report

    Channel insights, optimization recommendations, cross-channel synergies,
    top journeys, model comparison, open alerts and experiments.
    """
    try:
        if start is None:
            start, end = calculate_date_range(days, end)
        elif end is None:
            end = datetime.utcnow()
        report = engine.generate_report(DateRange(start, end), model_id=model_id)
    except AttributionEngineError as e:
        raise http_error(e)

    log.info(f"Served report {report.report_id}")
    return report.to_dict()
