"""
Touchpoint Store

Append-only log of raw marketing touchpoints. Customer journeys are
derived from it on demand (grouped per customer, ordered by time, split at
conversions and at the attribution window) and cached per customer until
that customer's touchpoints change.
"""
import math
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func

from attribution_engine.config import get_settings
from attribution_engine.exceptions import ValidationError
from attribution_engine.models.attribution import CustomerTouchpoint
from attribution_engine.models.base import SessionLocal, session_scope
from attribution_engine.models.domain import (
    CustomerJourney, DateRange, TouchPoint, TOUCH_TYPES, PLATFORMS, DEVICE_TYPES
)
from attribution_engine.utils.logger import log

settings = get_settings()


def validate_touchpoint(tp: TouchPoint):
    """Reject a malformed touchpoint before anything is written"""
    if not isinstance(tp, TouchPoint):
        raise ValidationError(f"Expected a TouchPoint, got {type(tp).__name__}")
    if not tp.id:
        raise ValidationError("Touchpoint id is required")
    if not isinstance(tp.timestamp, datetime):
        raise ValidationError(f"Touchpoint {tp.id}: timestamp is required")
    if not tp.channel_id:
        raise ValidationError(f"Touchpoint {tp.id}: channel id is required")
    if not tp.customer_id:
        raise ValidationError(f"Touchpoint {tp.id}: customer id is required")
    if tp.cost is None or not math.isfinite(tp.cost) or tp.cost < 0:
        raise ValidationError(f"Touchpoint {tp.id}: cost must be a non-negative number, got {tp.cost}")
    if tp.touch_value is None or not math.isfinite(tp.touch_value) or tp.touch_value < 0:
        raise ValidationError(f"Touchpoint {tp.id}: touch value must be a non-negative number, got {tp.touch_value}")
    if tp.touch_type not in TOUCH_TYPES:
        raise ValidationError(f"Touchpoint {tp.id}: unknown touch type '{tp.touch_type}'")
    if tp.platform not in PLATFORMS:
        raise ValidationError(f"Touchpoint {tp.id}: unknown platform '{tp.platform}'")
    if tp.device_type is not None and tp.device_type not in DEVICE_TYPES:
        raise ValidationError(f"Touchpoint {tp.id}: unknown device type '{tp.device_type}'")


def build_journeys(
    customer_id: str,
    touchpoints: List[TouchPoint],
    window: timedelta
) -> List[CustomerJourney]:
    """
    Split one customer's time-ordered touchpoints into journeys

    A journey closes on a conversion touch, or before a touch that falls
    outside the attribution window measured from the journey's first touch.
    """
    journeys = []
    current: List[TouchPoint] = []

    def close():
        if not current:
            return
        placed = tuple(tp.at_position(i + 1) for i, tp in enumerate(current))
        journeys.append(CustomerJourney(
            customer_id=customer_id,
            touchpoints=placed,
            customer_segment=placed[0].customer_segment,
        ))
        current.clear()

    for tp in touchpoints:
        if current and tp.timestamp - current[0].timestamp > window:
            close()
        current.append(tp)
        if tp.is_conversion:
            close()
    close()

    return journeys


class TouchpointStore:
    """Touchpoint log and journey builder"""

    def __init__(self, session_factory=None, attribution_window_days: Optional[int] = None):
        self.session_factory = session_factory or SessionLocal
        self.window = timedelta(days=attribution_window_days or settings.attribution_window_days)

        self._lock = threading.RLock()
        self._journey_cache: Dict[str, Tuple[CustomerJourney, ...]] = {}
        self._customer_generation: Dict[str, int] = defaultdict(int)

        with session_scope(self.session_factory) as db:
            count, max_seq = db.query(
                func.count(CustomerTouchpoint.id), func.max(CustomerTouchpoint.seq)
            ).one()
        self._revision = count or 0
        self._next_seq = (max_seq or 0) + 1

    @property
    def revision(self) -> int:
        """Increases with every accepted touchpoint"""
        return self._revision

    def ingest(self, touchpoint: TouchPoint) -> TouchPoint:
        """Validate and append one touchpoint"""
        return self.ingest_many([touchpoint])[0]

    def ingest_many(self, touchpoints: Iterable[TouchPoint]) -> List[TouchPoint]:
        """
        Validate every touchpoint, then append them all in one transaction

        Nothing is written if any touchpoint is rejected.
        """
        touchpoints = list(touchpoints)
        seen = set()
        for tp in touchpoints:
            validate_touchpoint(tp)
            if tp.id in seen:
                raise ValidationError(f"Touchpoint {tp.id} appears twice in the batch")
            seen.add(tp.id)

        if not touchpoints:
            return []

        with self._lock:
            with session_scope(self.session_factory) as db:
                existing = db.query(CustomerTouchpoint.id).filter(
                    CustomerTouchpoint.id.in_(list(seen))
                ).first()
                if existing:
                    raise ValidationError(f"Touchpoint {existing[0]} was already ingested")

                for offset, tp in enumerate(touchpoints):
                    db.add(CustomerTouchpoint.from_touchpoint(tp, self._next_seq + offset))

            self._next_seq += len(touchpoints)
            self._revision += len(touchpoints)
            for customer_id in {tp.customer_id for tp in touchpoints}:
                self._customer_generation[customer_id] += 1
                self._journey_cache.pop(customer_id, None)

        log.debug(f"Ingested {len(touchpoints)} touchpoints (revision {self._revision})")
        return touchpoints

    def journeys_for_customer(self, customer_id: str) -> List[CustomerJourney]:
        """All journeys of one customer, oldest first"""
        return list(self._journeys_by_customer([customer_id]).get(customer_id, ()))

    def journeys_in_range(self, date_range: DateRange) -> List[CustomerJourney]:
        """
        Journeys whose start or conversion timestamp falls in date_range

        Ordered by journey start, then customer id.
        """
        # A journey converting inside the range can start up to one window earlier
        lookback_start = date_range.start - self.window

        with session_scope(self.session_factory) as db:
            rows = db.query(CustomerTouchpoint.customer_id).filter(
                CustomerTouchpoint.timestamp >= lookback_start,
                CustomerTouchpoint.timestamp <= date_range.end
            ).distinct().all()
        customer_ids = sorted(r[0] for r in rows)

        if not customer_ids:
            log.warning(f"No touchpoints found between {date_range.start} and {date_range.end}")
            return []

        by_customer = self._journeys_by_customer(customer_ids)

        journeys = [
            journey
            for customer_id in customer_ids
            for journey in by_customer.get(customer_id, ())
            if date_range.contains(journey.journey_start) or date_range.contains(journey.conversion_date)
        ]
        journeys.sort(key=lambda j: (j.journey_start, j.customer_id))

        log.info(f"Built {len(journeys)} customer journeys from {date_range.start} to {date_range.end}")
        return journeys

    def all_journeys(self) -> List[CustomerJourney]:
        with session_scope(self.session_factory) as db:
            customer_ids = sorted(r[0] for r in db.query(CustomerTouchpoint.customer_id).distinct().all())
        by_customer = self._journeys_by_customer(customer_ids)
        journeys = [j for cid in customer_ids for j in by_customer.get(cid, ())]
        journeys.sort(key=lambda j: (j.journey_start, j.customer_id))
        return journeys

    def channels(self) -> List[Dict[str, str]]:
        """Known channels with their display name and platform"""
        with session_scope(self.session_factory) as db:
            rows = db.query(
                CustomerTouchpoint.channel_id,
                func.min(CustomerTouchpoint.channel_name),
                func.min(CustomerTouchpoint.platform)
            ).group_by(CustomerTouchpoint.channel_id).order_by(CustomerTouchpoint.channel_id).all()
        return [
            {'channel_id': channel_id, 'channel_name': name or channel_id, 'platform': platform or 'other'}
            for channel_id, name, platform in rows
        ]

    def _journeys_by_customer(self, customer_ids: List[str]) -> Dict[str, Tuple[CustomerJourney, ...]]:
        """Cached journeys per customer, building the missing ones in one query"""
        result = {}
        missing = []
        generations = {}

        with self._lock:
            for customer_id in customer_ids:
                cached = self._journey_cache.get(customer_id)
                if cached is not None:
                    result[customer_id] = cached
                else:
                    missing.append(customer_id)
                    generations[customer_id] = self._customer_generation[customer_id]

        if not missing:
            return result

        touchpoints_by_customer = defaultdict(list)
        with session_scope(self.session_factory) as db:
            for chunk_start in range(0, len(missing), 500):
                chunk = missing[chunk_start:chunk_start + 500]
                rows = db.query(CustomerTouchpoint).filter(
                    CustomerTouchpoint.customer_id.in_(chunk)
                ).order_by(
                    CustomerTouchpoint.customer_id,
                    CustomerTouchpoint.timestamp,
                    CustomerTouchpoint.seq
                ).all()
                for row in rows:
                    touchpoints_by_customer[row.customer_id].append(row.to_touchpoint())

        with self._lock:
            for customer_id in missing:
                journeys = tuple(build_journeys(
                    customer_id, touchpoints_by_customer.get(customer_id, []), self.window
                ))
                result[customer_id] = journeys
                # Only cache if nothing was ingested for this customer meanwhile
                if self._customer_generation[customer_id] == generations[customer_id]:
                    self._journey_cache[customer_id] = journeys

        return result
