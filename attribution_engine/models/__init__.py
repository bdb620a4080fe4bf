"""Database models for the attribution engine"""

from attribution_engine.models.attribution import (
    CustomerTouchpoint,
    AttributionModelRecord,
    ModelAccuracySnapshot
)

from attribution_engine.models.experiment import (
    AttributionExperiment,
    ExperimentMetricSnapshot
)

from attribution_engine.models.alert import AttributionAlert
