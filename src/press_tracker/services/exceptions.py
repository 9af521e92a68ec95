"""Service layer exception classes for Press Tracker.

This module defines all custom exceptions used by the service layer to provide
consistent error handling across the application.

Exception Hierarchy:
    ServiceError (base)
    ├── NotFoundError
    │   ├── PressRunNotFound
    │   ├── LoadNotFound
    │   ├── PurchaseLotNotFound
    │   ├── VesselNotFound
    │   └── BatchNotFound
    ├── ConflictError
    │   └── LotDepletedError
    ├── InvalidStateError
    │   ├── ValidationError
    │   ├── PressRunStatusError
    │   ├── AssignedVolumeExceedsJuiceError
    │   ├── VesselCapacityExceededError
    │   ├── VesselUnavailableError
    │   └── ZeroInputWeightError
    └── InternalError
        ├── BatchNameExhaustedError
        └── CompositionInvariantError
"""

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions inherit from this class.
    """

    pass


# =============================================================================
# Not Found
# =============================================================================


class NotFoundError(ServiceError):
    """Raised when a referenced entity is missing or soft-deleted."""

    entity = "Entity"

    def __init__(self, entity_id):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} with ID {entity_id} not found")


class PressRunNotFound(NotFoundError):
    """Raised when a press run cannot be found by ID.

    Example:
        >>> raise PressRunNotFound(12)
        PressRunNotFound: Press run with ID 12 not found
    """

    entity = "Press run"


class LoadNotFound(NotFoundError):
    """Raised when a press run load cannot be found by ID."""

    entity = "Load"


class PurchaseLotNotFound(NotFoundError):
    """Raised when a purchase lot cannot be found by ID."""

    entity = "Purchase lot"


class VesselNotFound(NotFoundError):
    """Raised when a vessel cannot be found by ID."""

    entity = "Vessel"


class BatchNotFound(NotFoundError):
    """Raised when a batch cannot be found by ID."""

    entity = "Batch"


# =============================================================================
# Conflict
# =============================================================================


class ConflictError(ServiceError):
    """Raised when an operation collides with the current state of a resource."""

    pass


class LotDepletedError(ConflictError):
    """Raised when fruit is drawn from a purchase lot that is already depleted.

    Example:
        >>> raise LotDepletedError(7)
        LotDepletedError: Purchase lot 7 is already depleted
    """

    def __init__(self, lot_id: int):
        self.lot_id = lot_id
        super().__init__(f"Purchase lot {lot_id} is already depleted")


# =============================================================================
# Invalid State
# =============================================================================


class InvalidStateError(ServiceError):
    """Raised when an operation is not allowed in the current state."""

    pass


class ValidationError(InvalidStateError):
    """Raised when input validation fails."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        error_msg = "; ".join(self.errors)
        super().__init__(f"Validation failed: {error_msg}")


class PressRunStatusError(InvalidStateError):
    """Raised when a press run is not in the status an operation requires."""

    def __init__(self, press_run_id: int, status: str, required: str = "in_progress"):
        self.press_run_id = press_run_id
        self.status = status
        self.required = required
        super().__init__(
            f"Press run {press_run_id} is {status}; operation requires {required}"
        )


class AssignedVolumeExceedsJuiceError(InvalidStateError):
    """Raised when vessel assignments ask for more juice than was pressed."""

    def __init__(self, assigned_l: float, available_l: float):
        self.assigned_l = assigned_l
        self.available_l = available_l
        super().__init__(
            f"Assigned volume exceeds available juice: "
            f"assigned {assigned_l:.3f}L, available {available_l:.3f}L"
        )


class VesselCapacityExceededError(InvalidStateError):
    """Raised when an assignment would overfill a vessel."""

    def __init__(
        self,
        vessel_id: int,
        requested_l: float,
        current_l: float,
        capacity_l: float,
    ):
        self.vessel_id = vessel_id
        self.requested_l = requested_l
        self.current_l = current_l
        self.capacity_l = capacity_l
        super().__init__(
            f"Vessel {vessel_id} cannot take {requested_l:.3f}L: "
            f"currently holds {current_l:.3f}L of {capacity_l:.3f}L capacity"
        )


class VesselUnavailableError(InvalidStateError):
    """Raised when a vessel's status does not allow it to receive juice."""

    def __init__(self, vessel_id: int, status: str, reason: Optional[str] = None):
        self.vessel_id = vessel_id
        self.status = status
        message = f"Vessel {vessel_id} is not available (status: {status})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ZeroInputWeightError(InvalidStateError):
    """Raised when a press run has no fruit weight to allocate against."""

    def __init__(self, press_run_id):
        self.press_run_id = press_run_id
        super().__init__(f"Press run {press_run_id} has zero total input weight")


# =============================================================================
# Internal
# =============================================================================


class InternalError(ServiceError):
    """Raised when an unexpected failure happens after mutation has begun."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(f"Internal error: {message}")


class BatchNameExhaustedError(InternalError):
    """Raised when every collision suffix for a batch name is taken."""

    def __init__(self, base_name: str, max_suffix: int):
        self.base_name = base_name
        self.max_suffix = max_suffix
        super().__init__(
            f"No unique batch name available for '{base_name}' (tried suffixes up to _{max_suffix})"
        )


class CompositionInvariantError(InternalError):
    """Raised when a batch's composition no longer sums to its volume."""

    def __init__(self, batch_id, detail: str):
        self.batch_id = batch_id
        self.detail = detail
        super().__init__(f"Composition invariant violated for batch {batch_id}: {detail}")
