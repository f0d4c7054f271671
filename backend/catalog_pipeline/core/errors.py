"""
Pipeline error taxonomy.

Every error raised across a public contract derives from PipelineError and
carries a stable, machine-readable ``error_code``. The API layer maps each
class to an HTTP status (see catalog_pipeline.main); workers decide between
"record on the attempt", "let the transport redeliver" and "dead-letter"
based on the class alone.

    ValidationError          bad input to a public contract method
    NotFoundError            unknown attempt id
    PreconditionFailedError  state-machine guard violation (non-retriable)
      InvalidStateError      operation not allowed in the attempt's state
    ExternalServiceError     OCR / LLM / storage / queue failure
      MappingFailedError     LLM call or response unusable for mapping
    NoProductsError          export requested with nothing to export
    QuotaExceededError       upload refused by a daily or per-IP hourly limit
    DeliveryLimitExceededError  mapping job delivered more often than allowed
"""

from __future__ import annotations

from uuid import UUID


class PipelineError(Exception):
    error_code: str = "PIPELINE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PipelineError):
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(PipelineError):
    error_code = "ATTEMPT_NOT_FOUND"

    def __init__(self, attempt_id: UUID) -> None:
        super().__init__(f"Processing attempt '{attempt_id}' was not found.")
        self.attempt_id = attempt_id


class PreconditionFailedError(PipelineError):
    """
    A guarded transition did not match the record's current state.

    Queue consumers must treat this as corruption, never as a transient
    fault: redelivering the same message cannot make it succeed.
    """

    error_code = "PRECONDITION_FAILED"

    def __init__(
        self,
        message: str,
        attempt_id: UUID | None = None,
        current_status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.attempt_id = attempt_id
        self.current_status = current_status


class InvalidStateError(PreconditionFailedError):
    error_code = "INVALID_STATE"


class ExternalServiceError(PipelineError):
    """OCR, LLM, object storage or queue failure, timeouts included."""

    error_code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class MappingFailedError(ExternalServiceError):
    error_code = "MAPPING_FAILED"

    def __init__(self, reason: str) -> None:
        super().__init__("column-mapping", reason)
        self.reason = reason


class NoProductsError(PipelineError):
    error_code = "NO_PRODUCTS"

    def __init__(self, attempt_id: UUID) -> None:
        super().__init__(f"Processing attempt '{attempt_id}' has no valid products to export.")
        self.attempt_id = attempt_id


class QuotaExceededError(PipelineError):
    error_code = "UPLOAD_QUOTA_EXCEEDED"

    def __init__(self, scope: str, limit: int, current: int) -> None:
        window = "today" if scope == "daily" else "this hour from your address"
        super().__init__(
            f"Upload limit reached: {current} of {limit} uploads used {window}. Try again later."
        )
        self.scope = scope
        self.limit = limit
        self.current = current


class DeliveryLimitExceededError(PipelineError):
    """The mapping job for an attempt was delivered past its budget; dead-letter it."""

    error_code = "DELIVERY_LIMIT_EXCEEDED"

    def __init__(self, attempt_id: UUID, deliveries: int) -> None:
        super().__init__(
            f"Mapping job for attempt '{attempt_id}' exceeded its delivery budget ({deliveries} deliveries)."
        )
        self.attempt_id = attempt_id
        self.deliveries = deliveries
