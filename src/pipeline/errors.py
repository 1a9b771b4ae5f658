"""Error taxonomy for the sync and aggregation pipeline.

Per-item errors (validation, unknown metric, missing device) are collected
into batch results.  ``AdapterUnavailable`` stays inside the adapter layer
and is reported through ``AdapterResult``.  Only ``StorageFailure`` and
``MissingIdentity`` abort a sync cycle.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    #: Machine-readable code used in batch error messages and HTTP bodies.
    code: str = "pipeline_error"

    #: True when the error must abort the surrounding sync step.
    fatal: bool = False


class ValidationError(PipelineError):
    """Malformed or out-of-schema input at the ingestion boundary."""

    code = "validation_error"


class OutOfRangeValue(ValidationError):
    """A reading value falls outside its metric's [min, max] range."""

    code = "out_of_range"

    def __init__(self, metric: str, value: object, min_value: object, max_value: object) -> None:
        self.metric = metric
        self.value = value
        self.min_value = min_value
        self.max_value = max_value
        super().__init__(
            f"{metric} value {value} outside valid range [{min_value}, {max_value}]"
        )


class UnknownMetric(PipelineError):
    """A reading references a metric name absent from the catalog."""

    code = "unknown_metric"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown metric type: {name!r}")


class DeviceNotFound(PipelineError):
    """A record references a device that does not exist for the user."""

    code = "device_not_found"


class AdapterUnavailable(PipelineError):
    """Source SDK / API not initialized or unreachable."""

    code = "adapter_unavailable"


class MissingIdentity(PipelineError):
    """A sync was requested without a user identity."""

    code = "missing_identity"
    fatal = True


class StorageFailure(PipelineError):
    """The persistence layer is unreachable or rejected a write."""

    code = "storage_failure"
    fatal = True
