"""
Touchpoint and Journey API Endpoints

Ingests raw marketing touchpoints and exposes the journeys built from them.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from attribution_engine.api.deps import get_engine, http_error
from attribution_engine.exceptions import AttributionEngineError
from attribution_engine.models.domain import TouchPoint, journey_to_dict
from attribution_engine.utils.helpers import to_naive_utc
from attribution_engine.utils.logger import log

router = APIRouter(prefix="/attribution", tags=["touchpoints"])


class TouchpointRequest(BaseModel):
    """One recorded marketing touch"""
    id: str
    timestamp: datetime
    channel_id: str
    channel_name: Optional[str] = None
    platform: str = "other"
    touch_type: str = "visit"
    customer_id: str
    is_conversion: bool = False
    touch_value: float = 0.0
    cost: float = 0.0
    customer_segment: Optional[str] = None
    session_id: Optional[str] = None
    device_type: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_touchpoint(self) -> TouchPoint:
        return TouchPoint(
            id=self.id,
            timestamp=to_naive_utc(self.timestamp),
            channel_id=self.channel_id,
            channel_name=self.channel_name or self.channel_id,
            platform=self.platform,
            touch_type=self.touch_type,
            customer_id=self.customer_id,
            is_conversion=self.is_conversion,
            touch_value=self.touch_value,
            cost=self.cost,
            customer_segment=self.customer_segment,
            session_id=self.session_id,
            device_type=self.device_type,
            campaign_id=self.campaign_id,
            campaign_name=self.campaign_name,
            metadata=dict(self.metadata),
        )


class TouchpointBatchRequest(BaseModel):
    touchpoints: List[TouchpointRequest]


@router.post("/touchpoints", status_code=201)
def ingest_touchpoint(request: TouchpointRequest, engine=Depends(get_engine)):
    """Record a single touchpoint"""
    try:
        engine.ingest_touchpoint(request.to_touchpoint())
    except AttributionEngineError as e:
        raise http_error(e)

    return {
        "status": "success",
        "touchpoint_id": request.id,
        "revision": engine.store.revision
    }


@router.post("/touchpoints/batch", status_code=201)
def ingest_touchpoints(request: TouchpointBatchRequest, engine=Depends(get_engine)):
    """
    Record many touchpoints at once

    All or nothing: one invalid touchpoint rejects the whole batch.
    """
    try:
        accepted = engine.ingest_touchpoints([tp.to_touchpoint() for tp in request.touchpoints])
    except AttributionEngineError as e:
        log.warning(f"Rejected touchpoint batch: {str(e)}")
        raise http_error(e)

    return {
        "status": "success",
        "touchpoints_ingested": len(accepted),
        "revision": engine.store.revision
    }


@router.get("/journeys/{customer_id}")
def get_customer_journeys(customer_id: str, engine=Depends(get_engine)):
    """Journeys of one customer, weighted by the active model"""
    try:
        journeys = engine.journeys_for_customer(customer_id)
    except AttributionEngineError as e:
        raise http_error(e)

    if not journeys:
        raise HTTPException(status_code=404, detail=f"No journeys for customer '{customer_id}'")

    return {
        "customer_id": customer_id,
        "model_id": engine.registry.champion_id,
        "journeys": [journey_to_dict(j) for j in journeys]
    }
