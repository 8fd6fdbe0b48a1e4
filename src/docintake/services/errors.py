"""Error taxonomy for the intake core.

Three tiers:
- BusinessRejection: the request is refused for a reason the caller can act
  on (threat detected, validation failed, access denied). Never retried.
- InfrastructureFailure: a dependency failed (storage, registry). Fatal for
  the request; compensating cleanup is attempted and logged.
- Best-effort failures (exclusivity cleanup, completion signals, audit
  persistence) have no exception type here: they are caught where they
  happen, logged, and never propagated.
"""

from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base exception for the intake core."""

    code = "intake_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def detail(self) -> dict[str, Any]:
        """Structured reason surfaced to the caller."""
        return {}


# =============================================================================
# Business rejections
# =============================================================================


class BusinessRejection(IntakeError):
    """Request refused for a business reason."""

    code = "rejected"


class ThreatDetectedError(BusinessRejection):
    """The threat scan reported the content as dirty."""

    code = "threat_detected"

    def __init__(self, threats: list[str]) -> None:
        self.threats = list(threats)
        super().__init__(f"Threats detected: {', '.join(self.threats) or 'unknown'}")

    def detail(self) -> dict[str, Any]:
        return {"threats": self.threats}


class ValidationFailedError(BusinessRejection):
    """The content validation score was below the acceptance threshold."""

    code = "validation_failed"

    def __init__(
        self,
        score: int,
        *,
        threshold: int,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        self.score = score
        self.threshold = threshold
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__(f"Validation score {score} is below threshold {threshold}")

    def detail(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "threshold": self.threshold,
            "errors": self.errors,
            "warnings": self.warnings,
        }


class StageTimeoutError(BusinessRejection):
    """A gated stage did not finish within its timeout."""

    code = "stage_timeout"

    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage '{stage}' timed out after {timeout:.1f}s")

    def detail(self) -> dict[str, Any]:
        return {"stage": self.stage, "timeout_seconds": self.timeout}


class ScanUnavailableError(BusinessRejection):
    """No scanner could confirm the content is clean."""

    code = "scan_unavailable"


class AccessDeniedError(BusinessRejection):
    """The principal may not act on the document."""

    code = "access_denied"

    def __init__(self, principal_id: str, resource_id: str, action: str) -> None:
        self.principal_id = principal_id
        self.resource_id = resource_id
        self.action = action
        super().__init__(f"Principal {principal_id} may not {action} {resource_id}")

    def detail(self) -> dict[str, Any]:
        return {"resource_id": self.resource_id, "action": self.action}


class DocumentNotFoundError(BusinessRejection):
    """The document does not exist or is no longer active."""

    code = "document_not_found"

    def __init__(self, document_id: Any) -> None:
        self.document_id = str(document_id)
        super().__init__(f"Document {document_id} not found")

    def detail(self) -> dict[str, Any]:
        return {"document_id": self.document_id}


class CategoryNotFoundError(BusinessRejection):
    """The category is unknown or inactive."""

    code = "category_not_found"

    def __init__(self, category_id: str) -> None:
        self.category_id = category_id
        super().__init__(f"Document category {category_id} not found or inactive")

    def detail(self) -> dict[str, Any]:
        return {"category_id": self.category_id}


class KycIncompleteError(BusinessRejection):
    """A KYC review was requested before every required document was uploaded."""

    code = "kyc_incomplete"

    def __init__(self, missing_categories: list[str]) -> None:
        self.missing_categories = sorted(missing_categories)
        super().__init__(
            "All required documents must be uploaded before submission: "
            + ", ".join(self.missing_categories)
        )

    def detail(self) -> dict[str, Any]:
        return {"missing_categories": self.missing_categories}


# =============================================================================
# Infrastructure failures
# =============================================================================


class InfrastructureFailure(IntakeError):
    """A dependency of the request failed."""

    code = "infrastructure_failure"


class StorageUnavailableError(InfrastructureFailure):
    """Encrypted persistence or retrieval failed."""

    code = "storage_unavailable"


class RegistryWriteError(InfrastructureFailure):
    """The document registry could not be written."""

    code = "registry_write_failed"
