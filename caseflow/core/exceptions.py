"""
Lifecycle-engine exception hierarchy.

Every service in the engine raises one of these types and nothing else for
business-rule failures. Blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

    NotFoundError      → 404
    ValidationError    → 422   malformed input, missing reason/order fields
    InvalidStateError  → 409   entity not in the status the operation needs
    ConflictError      → 409   lost a concurrent-mutation race, or a delete
                               that would orphan filed legal records
    BlockedError       → 423   checklist / step-ordering prerequisite unmet

Usage:
    from caseflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="StageInstance", resource_id=42)
    raise ValidationError("reason_enum is required", details={"reason_enum": "required"})
    raise BlockedError("Stage cannot close", blocking_reasons=[...])
"""


class LifecycleError(Exception):
    """Base class for every error the engine reports to its callers."""


class NotFoundError(LifecycleError):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant access attempts.
    A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model name (e.g. "LegalCase", "StageNotice").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(LifecycleError):
    """Raised when input is malformed or misses a mandatory business field.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names; values are
                 error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(LifecycleError):
    """Raised when an operation targets an entity in the wrong status.

    Example: advancing a stage instance that is already Completed, or
    amending a transition after it was confirmed.

    Args:
        resource: Model name.
        resource_id: PK of the entity.
        current: The status the entity is actually in.
        reason: What the operation needed instead.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None,
        current: str | None,
        reason: str,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current_status = current
        self.reason = reason
        msg = f"{resource} id={resource_id} (status={current}): {reason}"
        super().__init__(msg)


class ImmutabilityViolationError(InvalidStateError):
    """Raised by the ORM listeners when a frozen record is edited or deleted."""

    def __init__(self, resource: str, resource_id: int | str | None, reason: str) -> None:
        super().__init__(resource, resource_id, "immutable", reason)


class ConflictError(LifecycleError):
    """Raised when a concurrent mutation won the race, or a delete would
    orphan records that are already part of the legal file.

    Callers are expected to re-fetch and retry with user-visible feedback;
    the engine never retries on its own.

    Args:
        resource: Model name.
        resource_id: PK of the contended entity.
        reason: Human-readable explanation.
        details: Optional structured payload (e.g. blocking reply ids).
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None,
        reason: str,
        details: dict | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        self.details = details or {}
        super().__init__(f"{resource} id={resource_id}: {reason}")


class BlockedError(LifecycleError):
    """Raised when a gating prerequisite is not met.

    This is an expected outcome, not a fault: callers show
    ``blocking_reasons`` to the user (which checklist item, which step,
    which notice) and let them act on it.
    """

    def __init__(self, message: str, blocking_reasons: list[str]) -> None:
        self.blocking_reasons = list(blocking_reasons)
        super().__init__(message)
