"""
Batch Composition Service - per-batch provenance ledger.

This module provides functions for:
- Reading a batch's composition (which lots, in what share, at what cost)
- Checking the sum-to-one and sum-to-volume invariants after every mutation
- Aggregating composition by variety
- Tracing which batches a purchase lot went into

Composition entries are written by press_completion_service; this module
owns the read side and the invariant checks.
"""

from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload

from press_tracker.models import Batch, BatchComposition
from press_tracker.services.allocation_engine import CompositionEntryState
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import BatchNotFound, CompositionInvariantError
from press_tracker.utils.constants import FRACTION_TOLERANCE


def load_batch(session: Session, batch_id: int, *, for_update: bool = False) -> Batch:
    """
    Load a live batch inside the caller's transaction.

    Raises:
        BatchNotFound: If the batch is missing or soft-deleted
    """
    query = session.query(Batch).filter(Batch.id == batch_id, Batch.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    batch = query.first()
    if batch is None:
        raise BatchNotFound(batch_id)
    return batch


def entries_from_rows(rows: Iterable[BatchComposition]) -> List[CompositionEntryState]:
    """Convert composition rows into reducer input."""
    return [
        CompositionEntryState(
            lot_id=row.lot_id,
            vendor_id=row.vendor_id,
            variety_id=row.variety_id,
            input_weight_kg=row.input_weight_kg,
            juice_volume_l=row.juice_volume_l,
            material_cost=Decimal(str(row.material_cost)),
            fraction_of_batch=row.fraction_of_batch,
            avg_brix=row.avg_brix,
            variety_name=row.variety.name if row.variety else None,
        )
        for row in rows
    ]


def verify_entries(batch_id, entries: Iterable, current_volume_l: float) -> None:
    """
    Assert the ledger invariants for one batch.

    Accepts composition rows or CompositionEntryState objects.

    Raises:
        CompositionInvariantError: If fractions do not sum to 1 or volumes
            do not sum to the batch volume (both within 1e-6)
    """
    entries = list(entries)
    if not entries:
        raise CompositionInvariantError(batch_id, "batch has no composition entries")

    fraction_sum = sum(entry.fraction_of_batch for entry in entries)
    volume_sum = sum(entry.juice_volume_l for entry in entries)

    if abs(fraction_sum - 1.0) >= FRACTION_TOLERANCE:
        raise CompositionInvariantError(
            batch_id, f"fractions sum to {fraction_sum:.9f}, expected 1.0"
        )
    if abs(volume_sum - current_volume_l) >= FRACTION_TOLERANCE:
        raise CompositionInvariantError(
            batch_id,
            f"entry volumes sum to {volume_sum:.6f}L, batch holds {current_volume_l:.6f}L",
        )


def check_composition_invariants(batch_id: int, *, session: Optional[Session] = None) -> None:
    """
    Verify a stored batch's composition against its current volume.

    Raises:
        BatchNotFound: If the batch does not exist
        CompositionInvariantError: If an invariant does not hold
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = load_batch(session, batch_id)
        verify_entries(batch.id, batch.compositions, batch.current_volume_l)


def _entry_to_dict(entry: BatchComposition) -> Dict[str, Any]:
    result = entry.to_dict()
    result["variety_name"] = entry.variety.name if entry.variety else None
    result["vendor_name"] = entry.vendor.name if entry.vendor else None
    result["lot_code"] = entry.lot.lot_code if entry.lot else None
    return result


def get_composition(batch_id: int, *, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """
    Get a batch's provenance entries.

    Entries are ordered by juice volume (largest first), then by lot id.

    Args:
        batch_id: Batch to read
        session: Optional database session

    Returns:
        List of entry dicts with lot, vendor and variety names

    Raises:
        BatchNotFound: If the batch is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        load_batch(session, batch_id)
        entries = (
            session.query(BatchComposition)
            .options(
                joinedload(BatchComposition.variety),
                joinedload(BatchComposition.vendor),
                joinedload(BatchComposition.lot),
            )
            .filter(BatchComposition.batch_id == batch_id)
            .order_by(BatchComposition.juice_volume_l.desc(), BatchComposition.lot_id)
            .all()
        )
        return [_entry_to_dict(entry) for entry in entries]


def get_variety_breakdown(
    batch_id: int, *, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """
    Aggregate a batch's composition per variety.

    Returns:
        List of {"variety_name", "fraction", "juice_volume_l", "material_cost"},
        largest fraction first
    """
    breakdown: Dict[str, Dict[str, Any]] = {}
    for entry in get_composition(batch_id, session=session):
        name = entry["variety_name"] or "Unknown"
        row = breakdown.setdefault(
            name,
            {
                "variety_name": name,
                "fraction": 0.0,
                "juice_volume_l": 0.0,
                "material_cost": Decimal("0"),
            },
        )
        row["fraction"] += entry["fraction_of_batch"]
        row["juice_volume_l"] += entry["juice_volume_l"]
        row["material_cost"] += Decimal(str(entry["material_cost"]))

    return sorted(breakdown.values(), key=lambda r: (-r["fraction"], r["variety_name"]))


def get_batch_cost(batch_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Total material cost of a batch and its cost per litre.

    Returns:
        {"batch_id", "material_cost", "cost_per_liter"}; cost_per_liter is
        None for an empty batch
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        batch = load_batch(session, batch_id)
        total = sum((Decimal(str(e.material_cost)) for e in batch.compositions), Decimal("0"))
        per_liter = None
        if batch.current_volume_l > 0:
            per_liter = (total / Decimal(str(batch.current_volume_l))).quantize(Decimal("0.0001"))
        return {"batch_id": batch.id, "material_cost": total, "cost_per_liter": per_liter}


def get_lot_usage(lot_id: int, *, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """
    Trace a purchase lot forward into the batches it contributed to.

    Returns:
        List of {"batch_id", "batch_name", "juice_volume_l", "fraction_of_batch",
        "input_weight_kg", "material_cost"}, ordered by batch id
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        rows = (
            session.query(BatchComposition)
            .options(joinedload(BatchComposition.batch))
            .join(Batch, BatchComposition.batch_id == Batch.id)
            .filter(BatchComposition.lot_id == lot_id, Batch.deleted_at.is_(None))
            .order_by(BatchComposition.batch_id)
            .all()
        )
        return [
            {
                "batch_id": row.batch_id,
                "batch_name": row.batch.name,
                "juice_volume_l": row.juice_volume_l,
                "fraction_of_batch": row.fraction_of_batch,
                "input_weight_kg": row.input_weight_kg,
                "material_cost": row.material_cost,
            }
            for row in rows
        ]
