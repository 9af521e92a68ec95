"""
Press Completion Service - finishing a press run and allocating its juice.

This module provides functions for:
- Completing a press run: naming it, allocating its juice to vessels,
  creating or merging batches, recording provenance and depleting lots
- Previewing an allocation without writing anything

Transaction boundary:
    complete_press_run is one atomic unit. The press run row, every target
    vessel row, each vessel's active batch and every drawn lot are locked
    and re-read first; the pure allocation engine then validates and plans
    the whole allocation before any row is written. A failure while applying
    the plan raises InternalError. The apply step runs inside a SAVEPOINT,
    so no batch, composition or merge history row from the call survives
    even when the caller owns the session and commits afterwards.
"""

import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from press_tracker.models import (
    Batch,
    BatchComposition,
    BatchStatus,
    PressRun,
    PressRunStatus,
    PurchaseLot,
    Vessel,
    VesselStatus,
)
from press_tracker.services import (
    allocation_engine,
    audit_service,
    batch_composition_service,
    merge_history_service,
    naming_service,
    press_run_service,
    purchase_lot_service,
    vessel_service,
)
from press_tracker.services.allocation_engine import (
    AllocationPlan,
    CompositionEntryState,
    LoadInput,
    LotInfo,
    PressRunSnapshot,
    VesselAllocation,
    VesselAssignment,
    VesselState,
)
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    InternalError,
    ServiceError,
    ValidationError,
)
from press_tracker.services.logging_utils import (
    get_service_logger,
    log_operation,
    log_rejection,
)
from press_tracker.utils.datetime_utils import to_run_date, utc_now

logger = get_service_logger(__name__)

AssignmentLike = Union[VesselAssignment, Mapping[str, Any]]


# =============================================================================
# Input Handling
# =============================================================================


def coerce_assignments(assignments: Iterable[AssignmentLike]) -> List[VesselAssignment]:
    """
    Accept VesselAssignment objects or dicts.

    Dicts use "vessel_id", "volume_l" (or "gross_volume_l") and optional
    "transfer_loss_l".

    Raises:
        ValidationError: If a dict is missing its vessel or volume
    """
    result = []
    for item in assignments:
        if isinstance(item, VesselAssignment):
            result.append(item)
            continue
        vessel_id = item.get("vessel_id")
        volume = item.get("gross_volume_l", item.get("volume_l"))
        if vessel_id is None or volume is None:
            raise ValidationError(["each assignment needs vessel_id and volume_l"])
        result.append(
            VesselAssignment(
                vessel_id=int(vessel_id),
                gross_volume_l=float(volume),
                transfer_loss_l=float(item.get("transfer_loss_l") or 0.0),
            )
        )
    return result


def _validate_juice_volume(total_juice_volume_l) -> None:
    if total_juice_volume_l is None or total_juice_volume_l < 0:
        raise ValidationError(["total_juice_volume_l must be 0 or greater"])


# =============================================================================
# Snapshot (read + lock)
# =============================================================================


class _Snapshot:
    """ORM rows read under lock plus the engine's view of them."""

    def __init__(self):
        self.press_run: Optional[PressRun] = None
        self.lots: Dict[int, PurchaseLot] = {}
        self.vessels: Dict[int, Vessel] = {}
        self.loads: List[LoadInput] = []
        self.lot_infos: Dict[int, LotInfo] = {}
        self.vessel_states: Dict[int, VesselState] = {}


def _read_snapshot(
    session: Session,
    press_run_id: int,
    assignments: List[VesselAssignment],
    *,
    lock: bool,
) -> _Snapshot:
    snapshot = _Snapshot()
    press_run = press_run_service.load_press_run(session, press_run_id, for_update=lock)
    press_run_service.require_in_progress(press_run)
    snapshot.press_run = press_run

    for load in press_run.active_loads:
        snapshot.loads.append(
            LoadInput(lot_id=load.lot_id, weight_kg=load.input_weight_kg, brix=load.brix_measured)
        )

    # Lots and vessels are locked in id order
    for lot_id in sorted({load.lot_id for load in snapshot.loads}):
        lot = purchase_lot_service.load_lot(session, lot_id, for_update=lock)
        snapshot.lots[lot_id] = lot
        snapshot.lot_infos[lot_id] = LotInfo(
            lot_id=lot.id,
            vendor_id=lot.vendor_id,
            variety_id=lot.variety_id,
            variety_name=lot.variety.name if lot.variety else "",
            total_cost=lot.total_cost,
            total_input_weight_kg=lot.total_input_weight_kg,
            is_depleted=lot.is_depleted,
        )

    for vessel_id in sorted({a.vessel_id for a in assignments}):
        vessel = vessel_service.load_vessel(session, vessel_id, for_update=lock)
        active = vessel_service.find_active_batch(session, vessel_id)
        snapshot.vessels[vessel_id] = vessel
        snapshot.vessel_states[vessel_id] = VesselState(
            vessel_id=vessel.id,
            capacity_l=vessel.capacity_l,
            status=vessel.status,
            code=vessel.label,
            active_batch_id=active.id if active else None,
            current_volume_l=active.current_volume_l if active else 0.0,
        )

    return snapshot


def _plan(snapshot: _Snapshot, total_juice_volume_l: float, assignments) -> AllocationPlan:
    press_run = snapshot.press_run
    return allocation_engine.allocate(
        PressRunSnapshot(
            press_run_id=press_run.id,
            total_juice_volume_l=float(total_juice_volume_l),
            allocation_mode=press_run.allocation_mode,
        ),
        snapshot.loads,
        assignments,
        snapshot.vessel_states,
        snapshot.lot_infos,
    )


# =============================================================================
# Apply
# =============================================================================


def _write_entries(
    session: Session, batch: Batch, entries: List[CompositionEntryState]
) -> None:
    """Upsert composition rows so the batch matches the reduced entry list."""
    rows = {row.lot_id: row for row in batch.compositions}
    for entry in entries:
        row = rows.get(entry.lot_id)
        if row is None:
            row = BatchComposition(lot_id=entry.lot_id)
            batch.compositions.append(row)
        row.vendor_id = entry.vendor_id
        row.variety_id = entry.variety_id
        row.input_weight_kg = entry.input_weight_kg
        row.juice_volume_l = entry.juice_volume_l
        row.fraction_of_batch = entry.fraction_of_batch
        row.material_cost = entry.material_cost
        row.avg_brix = entry.avg_brix
    session.flush()


def _snapshot_composition(entries: List[CompositionEntryState]) -> List[Dict[str, Any]]:
    return [
        {
            "lot_id": entry.lot_id,
            "variety_name": entry.variety_name,
            "fraction": round(entry.fraction_of_batch, 6),
            "juice_volume_l": round(entry.juice_volume_l, 6),
        }
        for entry in entries
    ]


def _create_batch(
    session: Session,
    allocation: VesselAllocation,
    vessel: Vessel,
    press_run: PressRun,
    started_at: datetime,
    reserved_names: List[str],
) -> Batch:
    net = allocation.assignment.net_volume_l
    entries = allocation_engine.merge_compositions([], allocation.contributions(), net)

    name = naming_service.generate_batch_name(
        session,
        to_run_date(started_at),
        vessel.label,
        allocation_engine.variety_fractions(entries),
        reserved=reserved_names,
    )
    reserved_names.append(name)

    batch = Batch(
        name=name,
        vessel_id=vessel.id,
        status=BatchStatus.FERMENTATION.value,
        initial_volume_l=net,
        current_volume_l=net,
        origin_press_run_id=press_run.id,
        start_date=started_at,
    )
    session.add(batch)
    session.flush()
    _write_entries(session, batch, entries)
    batch_composition_service.verify_entries(batch.id, batch.compositions, batch.current_volume_l)

    audit_service.publish_create(
        session,
        "batches",
        batch.id,
        {
            "name": batch.name,
            "vessel_id": vessel.id,
            "volume_l": net,
            "origin_press_run_id": press_run.id,
        },
        press_run.completed_by,
    )
    return batch


def _merge_into_batch(
    session: Session,
    allocation: VesselAllocation,
    press_run: PressRun,
    notes: Optional[str],
) -> Batch:
    batch = batch_composition_service.load_batch(
        session, allocation.vessel.active_batch_id, for_update=True
    )
    volume_before = batch.current_volume_l
    net = allocation.assignment.net_volume_l
    new_total = volume_before + net

    existing = batch_composition_service.entries_from_rows(batch.compositions)
    entries = allocation_engine.merge_compositions(existing, allocation.contributions(), new_total)

    batch.current_volume_l = new_total
    _write_entries(session, batch, entries)
    batch_composition_service.verify_entries(batch.id, batch.compositions, batch.current_volume_l)

    loss = allocation.assignment.transfer_loss_l
    loss_note = f"Transfer loss {loss:.3f}L" if loss > 0 else None
    merge_history_service.record_merge(
        session,
        target_batch_id=batch.id,
        source_press_run_id=press_run.id,
        volume_added_l=net,
        target_volume_before_l=volume_before,
        target_volume_after_l=new_total,
        transfer_loss_l=loss,
        composition_snapshot=_snapshot_composition(entries),
        notes="; ".join(n for n in (loss_note, notes) if n) or None,
        actor_id=press_run.completed_by,
    )
    audit_service.publish_update(
        session,
        "batches",
        batch.id,
        {"current_volume_l": volume_before},
        {"current_volume_l": new_total, "merged_from_press_run_id": press_run.id},
        press_run.completed_by,
    )
    return batch


def _batch_summary(batch: Batch, allocation: VesselAllocation, action: str) -> Dict[str, Any]:
    return {
        "batch_id": batch.id,
        "batch_name": batch.name,
        "vessel_id": allocation.vessel.vessel_id,
        "action": action,
        "gross_volume_l": allocation.assignment.gross_volume_l,
        "transfer_loss_l": allocation.assignment.transfer_loss_l,
        "volume_added_l": allocation.assignment.net_volume_l,
        "volume_before_l": allocation.volume_before_l,
        "volume_after_l": batch.current_volume_l,
        "lots": [
            {
                "lot_id": share.lot_id,
                "fraction": share.fraction,
                "juice_volume_l": share.juice_volume_l,
                "material_cost": share.material_cost,
            }
            for share in allocation.shares
        ],
    }


def _apply_plan(
    session: Session,
    snapshot: _Snapshot,
    plan: AllocationPlan,
    actor_id: Optional[str],
    completed_at: datetime,
    notes: Optional[str],
) -> Dict[str, Any]:
    press_run = snapshot.press_run

    press_run.name = naming_service.generate_press_run_name(session, to_run_date(completed_at))
    press_run.status = PressRunStatus.COMPLETED.value
    press_run.total_input_weight_kg = plan.total_weight_kg
    press_run.total_juice_volume_l = plan.total_juice_volume_l
    press_run.extraction_rate = plan.total_juice_volume_l / plan.total_weight_kg
    press_run.completed_at = completed_at
    press_run.completed_by = actor_id
    if notes:
        press_run.notes = f"{press_run.notes}\n{notes}" if press_run.notes else notes
    session.flush()

    created: List[int] = []
    merged: List[int] = []
    summaries: List[Dict[str, Any]] = []
    reserved_names: List[str] = []

    for allocation in plan.allocations:
        vessel = snapshot.vessels[allocation.vessel.vessel_id]
        if allocation.is_merge:
            batch = _merge_into_batch(session, allocation, press_run, notes)
            merged.append(batch.id)
            summaries.append(_batch_summary(batch, allocation, "merged"))
        else:
            batch = _create_batch(
                session, allocation, vessel, press_run, completed_at, reserved_names
            )
            created.append(batch.id)
            summaries.append(_batch_summary(batch, allocation, "created"))

        vessel.status = VesselStatus.IN_USE.value
        vessel_service.release_reservation(session, vessel)

    depleted: List[int] = []
    for lot_id, weight in plan.lot_weights_kg.items():
        lot = snapshot.lots[lot_id]
        if purchase_lot_service.record_allocation(session, lot, weight, actor_id, press_run.id):
            depleted.append(lot_id)
    session.flush()

    audit_service.publish_update(
        session,
        "press_runs",
        press_run.id,
        {"status": PressRunStatus.IN_PROGRESS.value},
        {
            "status": press_run.status,
            "name": press_run.name,
            "total_juice_volume_l": press_run.total_juice_volume_l,
            "batches_created": created,
            "batches_merged": merged,
        },
        actor_id,
        "Press run completed",
    )

    return {
        "press_run_id": press_run.id,
        "press_run_name": press_run.name,
        "total_input_weight_kg": press_run.total_input_weight_kg,
        "total_juice_volume_l": press_run.total_juice_volume_l,
        "extraction_rate": press_run.extraction_rate,
        "assigned_volume_l": plan.assigned_gross_volume_l,
        "unassigned_volume_l": plan.unassigned_volume_l,
        "batches_created": created,
        "batches_merged": merged,
        "batches": summaries,
        "depleted_lot_ids": depleted,
    }


# =============================================================================
# Public API
# =============================================================================


def complete_press_run(
    press_run_id: int,
    total_juice_volume_l: float,
    assignments: Iterable[AssignmentLike],
    *,
    actor_id: Optional[str] = None,
    completed_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Complete a press run and allocate its juice to vessels.

    Args:
        press_run_id: Press run to complete (must be in progress)
        total_juice_volume_l: Measured juice output
        assignments: Vessel assignments (VesselAssignment or dicts with
            vessel_id, volume_l and optional transfer_loss_l)
        actor_id: Acting user
        completed_at: Completion time (defaults to now); its date names the run
        notes: Optional notes, also carried onto merge history
        session: Optional database session

    Returns:
        Dictionary with keys:
        - "press_run_id", "press_run_name"
        - "total_input_weight_kg", "total_juice_volume_l", "extraction_rate"
        - "assigned_volume_l", "unassigned_volume_l"
        - "batches_created" / "batches_merged": batch ids
        - "batches": per-batch summaries
        - "depleted_lot_ids": lots this completion depleted

    Raises:
        ValidationError: If inputs are malformed
        PressRunNotFound / VesselNotFound / PurchaseLotNotFound: Missing entities
        PressRunStatusError: If the run is not in progress
        LotDepletedError: If a drawn lot is already depleted
        AssignedVolumeExceedsJuiceError: If assignments exceed juice + 0.02 L
        VesselCapacityExceededError: If an assignment overfills a vessel
        VesselUnavailableError: If a vessel cannot receive juice
        ZeroInputWeightError: If the run has no fruit weight
        InternalError: If applying the plan fails
    """
    _validate_juice_volume(total_juice_volume_l)
    vessel_assignments = coerce_assignments(assignments)
    completed_at = completed_at or utc_now()

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        try:
            snapshot = _read_snapshot(session, press_run_id, vessel_assignments, lock=True)
            plan = _plan(snapshot, total_juice_volume_l, vessel_assignments)
        except ServiceError as e:
            log_rejection(logger, "complete_press_run", e, press_run_id=press_run_id)
            raise

        try:
            with session.begin_nested():
                result = _apply_plan(session, snapshot, plan, actor_id, completed_at, notes)
        except ServiceError as e:
            log_operation(
                logger,
                operation="complete_press_run",
                outcome="error",
                level=logging.ERROR,
                press_run_id=press_run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        except SQLAlchemyError as e:
            log_operation(
                logger,
                operation="complete_press_run",
                outcome="error",
                level=logging.ERROR,
                press_run_id=press_run_id,
                error=str(e),
            )
            raise InternalError(f"Failed to apply allocation for press run {press_run_id}", e) from e

        log_operation(
            logger,
            operation="complete_press_run",
            outcome="success",
            press_run_id=press_run_id,
            press_run_name=result["press_run_name"],
            batches_created=len(result["batches_created"]),
            batches_merged=len(result["batches_merged"]),
            lots_depleted=len(result["depleted_lot_ids"]),
        )
        return result


def preview_allocation(
    press_run_id: int,
    total_juice_volume_l: float,
    assignments: Iterable[AssignmentLike],
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Dry-run an allocation: validate and plan, write nothing.

    Returns:
        Dictionary with "lot_fractions", "total_weight_kg",
        "assigned_volume_l", "unassigned_volume_l" and "vessels" (one entry per
        assignment with "action" of "create" or "merge" and per-lot shares)

    Raises:
        The same precondition errors as complete_press_run
    """
    _validate_juice_volume(total_juice_volume_l)
    vessel_assignments = coerce_assignments(assignments)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        snapshot = _read_snapshot(session, press_run_id, vessel_assignments, lock=False)
        plan = _plan(snapshot, total_juice_volume_l, vessel_assignments)

        return {
            "press_run_id": plan.press_run_id,
            "allocation_mode": plan.allocation_mode,
            "total_weight_kg": plan.total_weight_kg,
            "lot_fractions": dict(plan.lot_fractions),
            "assigned_volume_l": plan.assigned_gross_volume_l,
            "unassigned_volume_l": plan.unassigned_volume_l,
            "vessels": [
                {
                    "vessel_id": allocation.vessel.vessel_id,
                    "action": "merge" if allocation.is_merge else "create",
                    "target_batch_id": allocation.vessel.active_batch_id,
                    "volume_before_l": allocation.volume_before_l,
                    "volume_after_l": allocation.volume_after_l,
                    "shares": [
                        {
                            "lot_id": share.lot_id,
                            "fraction": share.fraction,
                            "gross_juice_volume_l": share.gross_juice_volume_l,
                            "juice_volume_l": share.juice_volume_l,
                            "material_cost": share.material_cost,
                        }
                        for share in allocation.shares
                    ],
                }
                for allocation in plan.allocations
            ],
        }
