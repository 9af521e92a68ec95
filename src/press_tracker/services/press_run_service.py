"""
Press Run Service - the press run aggregate and its loads.

This module provides functions for:
- Starting, reading, listing and cancelling press runs
- Adding, updating and removing fruit loads while a run is in progress
- Soft and hard deletion of press runs

Load sequences are kept consecutive (1..n among active loads). Every
operation that changes loads locks the press run row first so concurrent
edits to one run serialize on the sequence read.

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly (caller owns the transaction)
- If session is None, create a new session via session_scope()
"""

from contextlib import nullcontext
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from press_tracker.models import (
    AllocationMode,
    Batch,
    BatchMergeHistory,
    PressRun,
    PressRunLoad,
    PressRunStatus,
    PurchaseLot,
)
from press_tracker.services import (
    audit_service,
    merge_history_service,
    purchase_lot_service,
    vessel_service,
)
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    InvalidStateError,
    LoadNotFound,
    LotDepletedError,
    PressRunNotFound,
    PressRunStatusError,
    ValidationError,
)
from press_tracker.services.logging_utils import (
    get_service_logger,
    log_operation,
    log_rejection,
)
from press_tracker.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def load_press_run(
    session: Session,
    press_run_id: int,
    *,
    for_update: bool = False,
    include_deleted: bool = False,
) -> PressRun:
    """
    Load a press run inside the caller's transaction.

    Args:
        for_update: Lock the press run row (SELECT ... FOR UPDATE)
        include_deleted: Also return soft-deleted runs

    Raises:
        PressRunNotFound: If the run is missing (or soft-deleted)
    """
    query = session.query(PressRun).filter(PressRun.id == press_run_id)
    if not include_deleted:
        query = query.filter(PressRun.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    press_run = query.first()
    if press_run is None:
        raise PressRunNotFound(press_run_id)
    return press_run


def require_in_progress(press_run: PressRun) -> None:
    """Raise PressRunStatusError unless the run is in progress."""
    if press_run.status != PressRunStatus.IN_PROGRESS.value:
        raise PressRunStatusError(press_run.id, press_run.status)


def _validate_load_values(weight_kg: Optional[float], brix_measured: Optional[float]) -> None:
    errors = []
    if weight_kg is None or weight_kg <= 0:
        errors.append("weight_kg must be greater than 0")
    if brix_measured is not None and not (0 <= brix_measured <= 40):
        errors.append("brix_measured must be between 0 and 40")
    if errors:
        raise ValidationError(errors)


def _active_loads(session: Session, press_run_id: int) -> List[PressRunLoad]:
    return (
        session.query(PressRunLoad)
        .filter(PressRunLoad.press_run_id == press_run_id, PressRunLoad.deleted_at.is_(None))
        .order_by(PressRunLoad.load_sequence, PressRunLoad.id)
        .all()
    )


def _recompute_totals(session: Session, press_run: PressRun) -> float:
    total = (
        session.query(func.coalesce(func.sum(PressRunLoad.input_weight_kg), 0.0))
        .filter(
            PressRunLoad.press_run_id == press_run.id,
            PressRunLoad.deleted_at.is_(None),
        )
        .scalar()
    )
    press_run.total_input_weight_kg = float(total or 0.0)
    return press_run.total_input_weight_kg


def _load_usable_lot(session: Session, lot_id: int) -> PurchaseLot:
    lot = purchase_lot_service.load_lot(session, lot_id)
    purchase_lot_service.ensure_not_depleted(lot)
    return lot


def _load_to_dict(load: PressRunLoad) -> Dict[str, Any]:
    result = load.to_dict()
    if load.lot is not None and load.lot.variety is not None:
        result["variety_name"] = load.lot.variety.name
    return result


# =============================================================================
# Press Runs
# =============================================================================


def create_press_run(
    *,
    actor_id: Optional[str] = None,
    notes: Optional[str] = None,
    allocation_mode: str = AllocationMode.WEIGHT.value,
    started_at: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Start a new press run.

    The run is unnamed until it completes; totals start at zero.

    Args:
        actor_id: Acting user
        notes: Optional notes
        allocation_mode: "weight" (default) or "sugar"
        started_at: Start time (defaults to now)
        session: Optional database session

    Returns:
        Dictionary representation of the new press run

    Raises:
        ValidationError: If allocation_mode is not recognised
    """
    try:
        mode = AllocationMode(allocation_mode).value
    except ValueError:
        raise ValidationError([f"unknown allocation_mode '{allocation_mode}'"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = PressRun(
            status=PressRunStatus.IN_PROGRESS.value,
            allocation_mode=mode,
            total_input_weight_kg=0.0,
            started_at=started_at or utc_now(),
            created_by=actor_id,
            notes=notes,
        )
        session.add(press_run)
        session.flush()

        audit_service.publish_create(
            session,
            "press_runs",
            press_run.id,
            {"status": press_run.status, "allocation_mode": mode},
            actor_id,
        )
        log_operation(
            logger,
            operation="create_press_run",
            outcome="success",
            press_run_id=press_run.id,
            allocation_mode=mode,
        )
        return press_run.to_dict()


def get_press_run(
    press_run_id: int,
    *,
    include_loads: bool = True,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Get a press run, optionally with its active loads.

    Raises:
        PressRunNotFound: If the run is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = load_press_run(session, press_run_id)
        result = press_run.to_dict()
        if include_loads:
            result["loads"] = [_load_to_dict(load) for load in _active_loads(session, press_run.id)]
        return result


def list_press_runs(
    *,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    List live press runs, most recently started first.

    Args:
        status: Optional PressRunStatus value to filter on
        limit: Maximum rows to return
        offset: Rows to skip
        session: Optional database session
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(PressRun).filter(PressRun.deleted_at.is_(None))
        if status is not None:
            query = query.filter(PressRun.status == PressRunStatus(status).value)
        query = query.order_by(PressRun.started_at.desc(), PressRun.id.desc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [press_run.to_dict() for press_run in query.all()]


def cancel_press_run(
    press_run_id: int,
    *,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    reserved_vessel_ids: Iterable[int] = (),
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Abandon an in-progress press run.

    Cancelled runs never produce batches. Vessels that were reserved for the
    run are released.

    Raises:
        PressRunNotFound: If the run does not exist
        PressRunStatusError: If the run is not in progress
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = load_press_run(session, press_run_id, for_update=True)
        require_in_progress(press_run)

        press_run.status = PressRunStatus.CANCELLED.value
        press_run.cancelled_at = utc_now()
        if reason:
            press_run.notes = f"{press_run.notes}\n{reason}" if press_run.notes else reason

        for vessel_id in reserved_vessel_ids:
            vessel = vessel_service.load_vessel(session, vessel_id, for_update=True)
            vessel_service.release_reservation(session, vessel)

        session.flush()
        audit_service.publish_update(
            session,
            "press_runs",
            press_run.id,
            {"status": PressRunStatus.IN_PROGRESS.value},
            {"status": press_run.status},
            actor_id,
            reason,
        )
        log_operation(
            logger,
            operation="cancel_press_run",
            outcome="success",
            press_run_id=press_run.id,
        )
        return press_run.to_dict()


def _has_produced_batches(session: Session, press_run_id: int) -> bool:
    created = (
        session.query(Batch.id).filter(Batch.origin_press_run_id == press_run_id).first()
    )
    if created is not None:
        return True
    merged = (
        session.query(BatchMergeHistory.id)
        .filter(BatchMergeHistory.source_press_run_id == press_run_id)
        .first()
    )
    return merged is not None


def delete_press_run(
    press_run_id: int,
    *,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> None:
    """
    Soft-delete a press run.

    Raises:
        PressRunNotFound: If the run does not exist
        InvalidStateError: If the run completed and created or merged into batches
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = load_press_run(session, press_run_id, for_update=True)
        if press_run.status == PressRunStatus.COMPLETED.value and _has_produced_batches(
            session, press_run.id
        ):
            raise InvalidStateError(
                f"Press run {press_run_id} produced batches and cannot be deleted"
            )

        press_run.mark_deleted()
        session.flush()
        audit_service.publish_delete(
            session, "press_runs", press_run.id, {"name": press_run.name}, actor_id
        )
        log_operation(
            logger,
            operation="delete_press_run",
            outcome="success",
            press_run_id=press_run_id,
        )


def purge_press_run(
    press_run_id: int,
    *,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, int]:
    """
    Hard-delete a press run and its loads.

    Batches, merge history and lot depletion records that point at the run
    survive with their reference set to NULL.

    Returns:
        Counts of detached references:
        {"merge_records", "batches", "lots"}

    Raises:
        PressRunNotFound: If the run does not exist (soft-deleted runs are purged too)
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = load_press_run(session, press_run_id, for_update=True, include_deleted=True)
        snapshot = {"name": press_run.name, "status": press_run.status}

        merge_records = merge_history_service.detach_press_run(session, press_run_id)
        batches = (
            session.query(Batch)
            .filter(Batch.origin_press_run_id == press_run_id)
            .update({Batch.origin_press_run_id: None}, synchronize_session="fetch")
        )
        lots = (
            session.query(PurchaseLot)
            .filter(PurchaseLot.depleted_in_press_run_id == press_run_id)
            .update({PurchaseLot.depleted_in_press_run_id: None}, synchronize_session="fetch")
        )

        session.delete(press_run)
        session.flush()

        audit_service.publish_delete(
            session, "press_runs", press_run_id, snapshot, actor_id, "Press run purged"
        )
        log_operation(
            logger,
            operation="purge_press_run",
            outcome="success",
            press_run_id=press_run_id,
            merge_records_detached=merge_records,
            batches_detached=batches,
            lots_detached=lots,
        )
        return {"merge_records": merge_records, "batches": batches, "lots": lots}


# =============================================================================
# Loads
# =============================================================================


def add_load(
    press_run_id: int,
    lot_id: int,
    weight_kg: float,
    *,
    actor_id: Optional[str] = None,
    brix_measured: Optional[float] = None,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Add a fruit load to an in-progress press run.

    The next sequence number is max(active sequences) + 1, read while the
    press run row is locked.

    Args:
        press_run_id: Press run receiving the load
        lot_id: Purchase lot the fruit comes from
        weight_kg: Fruit weight (kg, > 0)
        actor_id: Acting user
        brix_measured: Optional sugar reading (0-40)
        notes: Optional notes
        session: Optional database session

    Returns:
        Dictionary representation of the new load

    Raises:
        ValidationError: If weight or brix is out of range
        PressRunNotFound: If the run is missing or soft-deleted
        PressRunStatusError: If the run is not in progress
        PurchaseLotNotFound: If the lot is missing or soft-deleted
        LotDepletedError: If the lot is already depleted
    """
    _validate_load_values(weight_kg, brix_measured)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        press_run = load_press_run(session, press_run_id, for_update=True)
        require_in_progress(press_run)
        try:
            lot = _load_usable_lot(session, lot_id)
        except LotDepletedError as e:
            log_rejection(logger, "add_load", e, press_run_id=press_run.id, lot_id=lot_id)
            raise

        highest = (
            session.query(func.max(PressRunLoad.load_sequence))
            .filter(
                PressRunLoad.press_run_id == press_run.id,
                PressRunLoad.deleted_at.is_(None),
            )
            .scalar()
        )
        load = PressRunLoad(
            press_run_id=press_run.id,
            lot_id=lot.id,
            load_sequence=(highest or 0) + 1,
            input_weight_kg=float(weight_kg),
            brix_measured=brix_measured,
            notes=notes,
            created_by=actor_id,
        )
        session.add(load)
        session.flush()
        _recompute_totals(session, press_run)
        session.flush()

        audit_service.publish_create(
            session,
            "press_run_loads",
            load.id,
            {"press_run_id": press_run.id, "lot_id": lot.id, "weight_kg": load.input_weight_kg},
            actor_id,
        )
        log_operation(
            logger,
            operation="add_load",
            outcome="success",
            press_run_id=press_run.id,
            load_id=load.id,
            lot_id=lot.id,
            sequence=load.load_sequence,
            total_input_weight_kg=press_run.total_input_weight_kg,
        )
        return load.to_dict()


def _load_active_load(session: Session, load_id: int) -> PressRunLoad:
    load = (
        session.query(PressRunLoad)
        .filter(PressRunLoad.id == load_id, PressRunLoad.deleted_at.is_(None))
        .first()
    )
    if load is None:
        raise LoadNotFound(load_id)
    return load


def update_load(
    load_id: int,
    *,
    lot_id: Optional[int] = None,
    weight_kg: Optional[float] = None,
    brix_measured: Optional[float] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Replace the lot and/or weight of a load on an in-progress press run.

    Omitted arguments keep their current value. The sequence does not change.

    Raises:
        ValidationError: If weight or brix is out of range
        LoadNotFound: If the load is missing or soft-deleted
        PressRunNotFound / PressRunStatusError: As for add_load
        PurchaseLotNotFound / LotDepletedError: As for add_load
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        load = _load_active_load(session, load_id)
        press_run = load_press_run(session, load.press_run_id, for_update=True)
        require_in_progress(press_run)

        new_weight = weight_kg if weight_kg is not None else load.input_weight_kg
        new_brix = brix_measured if brix_measured is not None else load.brix_measured
        _validate_load_values(new_weight, new_brix)
        lot = _load_usable_lot(session, lot_id if lot_id is not None else load.lot_id)

        old_data = {"lot_id": load.lot_id, "weight_kg": load.input_weight_kg}
        load.lot_id = lot.id
        load.input_weight_kg = float(new_weight)
        load.brix_measured = new_brix
        if notes is not None:
            load.notes = notes
        load.updated_by = actor_id
        session.flush()
        _recompute_totals(session, press_run)
        session.flush()

        audit_service.publish_update(
            session,
            "press_run_loads",
            load.id,
            old_data,
            {"lot_id": load.lot_id, "weight_kg": load.input_weight_kg},
            actor_id,
        )
        log_operation(
            logger,
            operation="update_load",
            outcome="success",
            press_run_id=press_run.id,
            load_id=load.id,
            total_input_weight_kg=press_run.total_input_weight_kg,
        )
        return load.to_dict()


def delete_load(
    load_id: int,
    *,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    Soft-delete a load and renumber the remaining loads to 1..n.

    Relative order of the remaining loads is preserved.

    Returns:
        The remaining active loads, in sequence order

    Raises:
        LoadNotFound: If the load is missing or already deleted
        PressRunStatusError: If the run is not in progress
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        load = _load_active_load(session, load_id)
        press_run = load_press_run(session, load.press_run_id, for_update=True)
        require_in_progress(press_run)

        load.mark_deleted()
        load.updated_by = actor_id
        session.flush()

        remaining = _active_loads(session, press_run.id)
        for sequence, remaining_load in enumerate(remaining, start=1):
            remaining_load.load_sequence = sequence
        _recompute_totals(session, press_run)
        session.flush()

        audit_service.publish_delete(
            session,
            "press_run_loads",
            load.id,
            {"press_run_id": press_run.id, "lot_id": load.lot_id},
            actor_id,
        )
        log_operation(
            logger,
            operation="delete_load",
            outcome="success",
            press_run_id=press_run.id,
            load_id=load.id,
            remaining_loads=len(remaining),
        )
        return [item.to_dict() for item in remaining]


def list_loads(press_run_id: int, *, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """
    Active loads of a press run in sequence order.

    Raises:
        PressRunNotFound: If the run is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        load_press_run(session, press_run_id)
        loads = (
            session.query(PressRunLoad)
            .options(joinedload(PressRunLoad.lot).joinedload(PurchaseLot.variety))
            .filter(
                PressRunLoad.press_run_id == press_run_id,
                PressRunLoad.deleted_at.is_(None),
            )
            .order_by(PressRunLoad.load_sequence)
            .all()
        )
        return [_load_to_dict(load) for load in loads]
