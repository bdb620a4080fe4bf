"""
Experiment Models

Champion/challenger A/B comparisons between two registered attribution models.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from datetime import datetime

from attribution_engine.models.base import Base

EXPERIMENT_STATUSES = ('draft', 'running', 'completed', 'cancelled')
TERMINAL_STATUSES = ('completed', 'cancelled')


class AttributionExperiment(Base):
    """
    A/B comparison of a control and a treatment model

    Status only moves forward: draft -> running -> completed | cancelled.
    """
    __tablename__ = "attribution_experiments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, default="draft", index=True)

    control_model = Column(String, nullable=False)
    treatment_model = Column(String, nullable=False)
    traffic_split = Column(Float, nullable=False)  # 0-100, share of traffic on treatment

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    # Latest snapshot
    control_accuracy = Column(Float, default=0.0)
    control_revenue = Column(Float, default=0.0)
    control_conversions = Column(Integer, default=0)
    treatment_accuracy = Column(Float, default=0.0)
    treatment_revenue = Column(Float, default=0.0)
    treatment_conversions = Column(Integer, default=0)
    lift = Column(Float, default=0.0)  # %
    significance = Column(Float, default=0.0)  # 0-100
    confidence = Column(Float, default=0.0)  # 0-100
    evaluations = Column(Integer, default=0)

    winner = Column(String, nullable=True)  # control, treatment
    conclusion = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'control_model': self.control_model,
            'treatment_model': self.treatment_model,
            'traffic_split': self.traffic_split,
            'metrics': {
                'control': {
                    'accuracy': self.control_accuracy,
                    'revenue': self.control_revenue,
                    'conversions': self.control_conversions,
                },
                'treatment': {
                    'accuracy': self.treatment_accuracy,
                    'revenue': self.treatment_revenue,
                    'conversions': self.treatment_conversions,
                },
                'lift': self.lift,
                'significance': self.significance,
                'confidence': self.confidence,
            },
            'evaluations': self.evaluations,
            'winner': self.winner,
            'conclusion': self.conclusion,
        }


class ExperimentMetricSnapshot(Base):
    """
    One evaluation tick of an experiment

    Append-only: earlier snapshots are never edited.
    """
    __tablename__ = "experiment_metric_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String, index=True, nullable=False)
    recorded_at = Column(DateTime, index=True, default=datetime.utcnow)

    control_accuracy = Column(Float, default=0.0)
    control_revenue = Column(Float, default=0.0)
    control_conversions = Column(Integer, default=0)
    control_journeys = Column(Integer, default=0)
    treatment_accuracy = Column(Float, default=0.0)
    treatment_revenue = Column(Float, default=0.0)
    treatment_conversions = Column(Integer, default=0)
    treatment_journeys = Column(Integer, default=0)

    lift = Column(Float, default=0.0)
    significance = Column(Float, default=0.0)
    confidence = Column(Float, default=0.0)
