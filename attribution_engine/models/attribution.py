"""
Attribution Models

Raw touchpoint log and the attribution model registry tables.
Customer journeys are derived from touchpoints and never stored.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Boolean, Text
from datetime import datetime

from attribution_engine.models.base import Base
from attribution_engine.models.domain import TouchPoint


class CustomerTouchpoint(Base):
    """
    Individual touchpoint in a customer journey

    Append-only: rows are inserted by ingestion and never updated.
    """
    __tablename__ = "attribution_touchpoints"

    id = Column(String, primary_key=True)
    seq = Column(Integer, index=True)  # Ingestion order, tie-breaker for equal timestamps

    # Customer identification
    customer_id = Column(String, index=True, nullable=False)
    customer_segment = Column(String, nullable=True)
    session_id = Column(String, nullable=True)

    # Touchpoint details
    timestamp = Column(DateTime, index=True, nullable=False)
    touch_type = Column(String)  # impression, click, engagement, view, visit
    is_conversion = Column(Boolean, default=False)
    touch_value = Column(Float, default=0.0)  # Conversion value carried by this touch
    cost = Column(Float, default=0.0)

    # Channel
    channel_id = Column(String, index=True, nullable=False)
    channel_name = Column(String)
    platform = Column(String, index=True)  # meta, google, tiktok, email, organic, direct, referral
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)

    # Device/context
    device_type = Column(String, nullable=True)  # mobile, desktop, tablet
    touch_metadata = Column(JSON, nullable=True)  # utm_*, ad group, creative, ...

    created_at = Column(DateTime, default=datetime.utcnow)

    @classmethod
    def from_touchpoint(cls, tp: TouchPoint, seq: int) -> "CustomerTouchpoint":
        return cls(
            id=tp.id,
            seq=seq,
            customer_id=tp.customer_id,
            customer_segment=tp.customer_segment,
            session_id=tp.session_id,
            timestamp=tp.timestamp,
            touch_type=tp.touch_type,
            is_conversion=tp.is_conversion,
            touch_value=tp.touch_value,
            cost=tp.cost,
            channel_id=tp.channel_id,
            channel_name=tp.channel_name,
            platform=tp.platform,
            campaign_id=tp.campaign_id,
            campaign_name=tp.campaign_name,
            device_type=tp.device_type,
            touch_metadata=dict(tp.metadata or {}),
        )

    def to_touchpoint(self) -> TouchPoint:
        return TouchPoint(
            id=self.id,
            timestamp=self.timestamp,
            channel_id=self.channel_id,
            channel_name=self.channel_name or self.channel_id,
            platform=self.platform or "other",
            touch_type=self.touch_type or "visit",
            customer_id=self.customer_id,
            is_conversion=bool(self.is_conversion),
            touch_value=self.touch_value or 0.0,
            cost=self.cost or 0.0,
            customer_segment=self.customer_segment,
            session_id=self.session_id,
            device_type=self.device_type,
            campaign_id=self.campaign_id,
            campaign_name=self.campaign_name,
            metadata=dict(self.touch_metadata or {}),
        )


class AttributionModelRecord(Base):
    """
    Registered attribution model

    Exactly one row has is_active = True (the champion).
    """
    __tablename__ = "attribution_models"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    type = Column(String)  # rule_based, algorithmic, ml, ensemble, data_driven, markov_chain
    kind = Column(String, nullable=False)  # Which built-in algorithm computes the weights
    description = Column(Text, nullable=True)
    params = Column(JSON, nullable=True)

    # Quality metrics (0-1)
    accuracy = Column(Float, default=0.0)
    precision = Column(Float, default=0.0)
    recall = Column(Float, default=0.0)
    f1_score = Column(Float, default=0.0)

    # Training metadata
    training_journeys = Column(Integer, default=0)
    training_start = Column(DateTime, nullable=True)
    training_end = Column(DateTime, nullable=True)
    features = Column(JSON, nullable=True)
    last_trained = Column(DateTime, nullable=True)

    status = Column(String, default="ready")  # training, ready, deployed, deprecated
    version = Column(String, default="1.0.0")
    is_active = Column(Boolean, default=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'kind': self.kind,
            'description': self.description,
            'params': dict(self.params or {}),
            'accuracy': self.accuracy,
            'precision': self.precision,
            'recall': self.recall,
            'f1_score': self.f1_score,
            'training_data': {
                'journeys': self.training_journeys,
                'time_range': {
                    'start': self.training_start,
                    'end': self.training_end,
                },
                'features': list(self.features or []),
            },
            'last_trained': self.last_trained,
            'status': self.status,
            'version': self.version,
            'is_active': bool(self.is_active),
        }


class ModelAccuracySnapshot(Base):
    """
    Accuracy history per model (percentage points)

    Feeds model drift detection.
    """
    __tablename__ = "model_accuracy_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    model_id = Column(String, index=True, nullable=False)
    accuracy = Column(Float, nullable=False)  # 0-100
    journeys = Column(Integer, default=0)
    source = Column(String, default="monitor")  # monitor, training
    recorded_at = Column(DateTime, index=True, default=datetime.utcnow)
