"""
Deterministic synthetic touchpoints and journeys for tests.
"""
import random
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from attribution_engine.models.domain import CustomerJourney, TouchPoint

BASE_TIME = datetime(2026, 3, 1, 9, 0)

CHANNELS = {
    'google_search': ('Google Search', 'google'),
    'meta_ads': ('Meta Ads', 'meta'),
    'tiktok_ads': ('TikTok Ads', 'tiktok'),
    'email': ('Email', 'email'),
    'organic': ('Organic Search', 'organic'),
    'direct': ('Direct', 'direct'),
}

_counter = {'n': 0}


def _next_id(prefix: str = 'tp') -> str:
    _counter['n'] += 1
    return f"{prefix}_{_counter['n']:06d}"


def touch(
    customer_id: str,
    channel_id: str,
    timestamp: datetime,
    is_conversion: bool = False,
    value: float = 0.0,
    cost: float = 1.0,
    platform: Optional[str] = None,
    touch_type: str = 'click',
    device_type: str = 'desktop',
    touch_id: Optional[str] = None
) -> TouchPoint:
    name, default_platform = CHANNELS.get(channel_id, (channel_id, 'other'))
    return TouchPoint(
        id=touch_id or _next_id(),
        timestamp=timestamp,
        channel_id=channel_id,
        channel_name=name,
        platform=platform or default_platform,
        touch_type=touch_type,
        customer_id=customer_id,
        is_conversion=is_conversion,
        touch_value=value if is_conversion else 0.0,
        cost=cost,
        device_type=device_type,
    )


def path_touches(
    customer_id: str,
    channels: Sequence[str],
    start: datetime = BASE_TIME,
    value: float = 100.0,
    converted: bool = True,
    cost: float = 1.0,
    spacing: timedelta = timedelta(hours=6),
    platform: Optional[str] = None,
    id_prefix: Optional[str] = None
) -> List[TouchPoint]:
    """Touches along a channel path; the last one converts when converted"""
    touches = []
    for i, channel in enumerate(channels):
        last = i == len(channels) - 1
        touches.append(touch(
            customer_id,
            channel,
            start + spacing * i,
            is_conversion=converted and last,
            value=value,
            cost=cost,
            platform=platform,
            touch_id=f"{id_prefix}_{i}" if id_prefix else None,
        ))
    return touches


def make_journey(channels: Sequence[str], customer_id: str = 'cust_1', **kwargs) -> CustomerJourney:
    touches = path_touches(customer_id, channels, **kwargs)
    return CustomerJourney(
        customer_id=customer_id,
        touchpoints=tuple(tp.at_position(i + 1) for i, tp in enumerate(touches)),
    )


def generate_touchpoints(customers: int = 60, seed: int = 7, start: datetime = BASE_TIME) -> List[TouchPoint]:
    """Mixed journeys over two weeks; same seed, same touchpoints"""
    rng = random.Random(seed)
    channel_ids = sorted(CHANNELS)
    touches = []
    for n in range(customers):
        customer_id = f"cust_{n:04d}"
        length = rng.randint(1, 5)
        path = [rng.choice(channel_ids) for _ in range(length)]
        journey_start = start + timedelta(hours=rng.randint(0, 14 * 24))
        touches.extend(path_touches(
            customer_id,
            path,
            start=journey_start,
            value=float(rng.randint(20, 400)),
            converted=rng.random() < 0.6,
            cost=round(rng.uniform(0.5, 15.0), 2),
            spacing=timedelta(hours=rng.randint(1, 30)),
            id_prefix=customer_id,
        ))
    return touches


def generate_journeys(customers: int = 60, seed: int = 7) -> List[CustomerJourney]:
    from attribution_engine.services.touchpoint_store import build_journeys
    by_customer = {}
    for tp in generate_touchpoints(customers, seed):
        by_customer.setdefault(tp.customer_id, []).append(tp)
    journeys = []
    for customer_id in sorted(by_customer):
        journeys.extend(build_journeys(customer_id, by_customer[customer_id], timedelta(days=30)))
    return journeys
