"""
Attribution Alert Models

Raised by the drift monitor. Rows are appended; resolving is the only update.
"""
from sqlalchemy import Column, String, Float, DateTime, JSON, Boolean, Text
from datetime import datetime

from attribution_engine.models.base import Base

ALERT_TYPES = (
    'model_drift',
    'performance_drop',
    'budget_reallocation',
    'attribution_anomaly',
    'channel_optimization',
)
SEVERITIES = ('low', 'medium', 'high', 'critical')


class AttributionAlert(Base):
    """
    Severity-graded alert about the attribution picture
    """
    __tablename__ = "attribution_alerts"

    id = Column(String, primary_key=True)
    timestamp = Column(DateTime, index=True, default=datetime.utcnow)
    type = Column(String, index=True, nullable=False)
    severity = Column(String, index=True, nullable=False)

    title = Column(String)
    description = Column(Text)
    affected_channels = Column(JSON)

    # Metrics
    metric_before = Column(Float)
    metric_after = Column(Float)
    metric_change = Column(Float)
    metric_threshold = Column(Float)

    recommendations = Column(JSON)
    action_required = Column(Boolean, default=True)
    auto_resolve = Column(Boolean, default=False)

    # Same condition on the same subject -> same fingerprint
    fingerprint = Column(String, index=True)

    resolved = Column(Boolean, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'type': self.type,
            'severity': self.severity,
            'title': self.title,
            'description': self.description,
            'affected_channels': list(self.affected_channels or []),
            'metrics': {
                'before': self.metric_before,
                'after': self.metric_after,
                'change': self.metric_change,
                'threshold': self.metric_threshold,
            },
            'recommendations': list(self.recommendations or []),
            'action_required': bool(self.action_required),
            'auto_resolve': bool(self.auto_resolve),
            'resolved': bool(self.resolved),
            'resolved_at': self.resolved_at,
        }
