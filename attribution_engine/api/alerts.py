"""
Attribution Alert API Endpoints
"""
from fastapi import APIRouter, Depends, Query

from attribution_engine.api.deps import get_engine, http_error
from attribution_engine.exceptions import AttributionEngineError

router = APIRouter(prefix="/attribution", tags=["alerts"])


@router.get("/alerts")
def list_alerts(
    include_resolved: bool = Query(False, description="Include resolved alerts"),
    engine=Depends(get_engine)
):
    alerts = engine.list_alerts(include_resolved)
    return {
        "count": len(alerts),
        "alerts": alerts
    }


@router.post("/alerts/check")
def run_drift_check(engine=Depends(get_engine)):
    """Run the drift check now instead of waiting for the next scheduled tick"""
    try:
        raised = engine.run_drift_check()
    except AttributionEngineError as e:
        raise http_error(e)
    return {
        "alerts_raised": len(raised),
        "alerts": raised
    }


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: str, engine=Depends(get_engine)):
    try:
        return engine.resolve_alert(alert_id)
    except AttributionEngineError as e:
        raise http_error(e)
