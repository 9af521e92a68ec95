"""
Vessel Service - the vessel registry as seen by the pressing engine.

This module provides functions for:
- Registering vessels
- Reading capacity, status and the active batch
- Status transitions and the reserved-for-pressing flag
"""

from contextlib import nullcontext
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from press_tracker.models import ACTIVE_BATCH_STATUSES, Batch, Vessel, VesselStatus
from press_tracker.services import audit_service
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    ValidationError,
    VesselNotFound,
    VesselUnavailableError,
)
from press_tracker.services.logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

VALID_TRANSITIONS = {
    VesselStatus.AVAILABLE.value: {
        VesselStatus.IN_USE.value,
        VesselStatus.CLEANING.value,
        VesselStatus.MAINTENANCE.value,
    },
    VesselStatus.IN_USE.value: {
        VesselStatus.AVAILABLE.value,
        VesselStatus.CLEANING.value,
        VesselStatus.MAINTENANCE.value,
    },
    VesselStatus.CLEANING.value: {VesselStatus.AVAILABLE.value, VesselStatus.MAINTENANCE.value},
    VesselStatus.MAINTENANCE.value: {VesselStatus.AVAILABLE.value, VesselStatus.CLEANING.value},
}


def create_vessel(
    name: str,
    capacity_l: float,
    *,
    code: Optional[str] = None,
    location: Optional[str] = None,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Register a fermentation vessel.

    Raises:
        ValidationError: If capacity is not positive
    """
    if capacity_l is None or capacity_l <= 0:
        raise ValidationError(["capacity_l must be greater than 0"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = Vessel(name=name, code=code, capacity_l=float(capacity_l), location=location)
        session.add(vessel)
        session.flush()
        audit_service.publish_create(
            session, "vessels", vessel.id, {"name": name, "capacity_l": capacity_l}, actor_id
        )
        return vessel.to_dict()


def load_vessel(session: Session, vessel_id: int, *, for_update: bool = False) -> Vessel:
    """
    Load a live vessel inside the caller's transaction.

    Args:
        for_update: Lock the vessel row (SELECT ... FOR UPDATE)

    Raises:
        VesselNotFound: If the vessel is missing or soft-deleted
    """
    query = session.query(Vessel).filter(Vessel.id == vessel_id, Vessel.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    vessel = query.first()
    if vessel is None:
        raise VesselNotFound(vessel_id)
    return vessel


def find_active_batch(session: Session, vessel_id: int) -> Optional[Batch]:
    """Return the vessel's active (fermenting/aging/conditioning) batch, if any."""
    return (
        session.query(Batch)
        .filter(
            Batch.vessel_id == vessel_id,
            Batch.deleted_at.is_(None),
            Batch.status.in_(ACTIVE_BATCH_STATUSES),
        )
        .order_by(Batch.id.desc())
        .with_for_update()
        .first()
    )


def get_vessel(vessel_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Get a vessel with its current occupancy.

    Returns:
        Vessel dict plus "active_batch_id" and "current_volume_l"

    Raises:
        VesselNotFound: If the vessel is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id)
        batch = find_active_batch(session, vessel_id)
        result = vessel.to_dict()
        result["active_batch_id"] = batch.id if batch else None
        result["current_volume_l"] = batch.current_volume_l if batch else 0.0
        result["free_capacity_l"] = vessel.capacity_l - result["current_volume_l"]
        return result


def set_status(
    vessel_id: int,
    status: str,
    *,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Move a vessel to a new status.

    A vessel holding an active batch cannot be cleaned, serviced or released.

    Raises:
        VesselNotFound: If the vessel does not exist
        VesselUnavailableError: If the transition is not allowed
        ValidationError: If the status is unknown
    """
    try:
        status = VesselStatus(status).value
    except ValueError:
        raise ValidationError([f"Unknown vessel status: {status}"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, for_update=True)
        old_status = vessel.status

        if status == old_status:
            return vessel.to_dict()
        if status not in VALID_TRANSITIONS.get(old_status, set()):
            raise VesselUnavailableError(
                vessel_id, old_status, f"cannot change from {old_status} to {status}"
            )
        if status != VesselStatus.IN_USE.value and find_active_batch(session, vessel_id):
            raise VesselUnavailableError(vessel_id, old_status, "vessel holds an active batch")

        vessel.status = status
        session.flush()
        audit_service.publish_update(
            session, "vessels", vessel.id, {"status": old_status}, {"status": status}, actor_id
        )
        log_operation(
            logger,
            operation="set_vessel_status",
            outcome="success",
            vessel_id=vessel_id,
            old_status=old_status,
            new_status=status,
        )
        return vessel.to_dict()


def reserve_for_pressing(
    vessel_id: int,
    *,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Flag a vessel as the intended destination of an in-progress press run.

    Raises:
        VesselNotFound: If the vessel does not exist
        VesselUnavailableError: If the vessel is being cleaned or serviced
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vessel = load_vessel(session, vessel_id, for_update=True)
        if vessel.status not in (VesselStatus.AVAILABLE.value, VesselStatus.IN_USE.value):
            raise VesselUnavailableError(vessel_id, vessel.status)
        vessel.reserved_for_pressing = True
        session.flush()
        audit_service.publish_update(
            session,
            "vessels",
            vessel.id,
            {"reserved_for_pressing": False},
            {"reserved_for_pressing": True},
            actor_id,
        )
        return vessel.to_dict()


def release_reservation(session: Session, vessel: Vessel) -> None:
    """Clear the reserved-for-pressing flag inside the caller's transaction."""
    vessel.reserved_for_pressing = False
