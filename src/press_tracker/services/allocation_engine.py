"""
Allocation Engine - pure juice allocation planning for press run completion.

This module provides functions for:
- Validating vessel assignments against measured juice and vessel capacity
- Computing per-lot fractions from load weights (or sugar weights)
- Splitting each assignment's juice, fruit weight and cost across lots
- Merging new contributions into an existing batch composition

Transaction boundary: Pure computation (no database access). Every function
here takes plain dataclasses and returns new ones; the apply step in
press_completion_service turns an AllocationPlan into rows.

Volume semantics:
    Per-lot shares are computed against the assignment's gross volume. The
    transfer loss is one shared process loss: the batch records the net
    volume, and each entry's recorded juice volume is its fraction of that
    net volume. No lot is charged more of the loss than its share.
"""

from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from press_tracker.models.enums import AllocationMode, VesselStatus
from press_tracker.services.exceptions import (
    AssignedVolumeExceedsJuiceError,
    LotDepletedError,
    PurchaseLotNotFound,
    ValidationError,
    VesselCapacityExceededError,
    VesselNotFound,
    VesselUnavailableError,
    ZeroInputWeightError,
)
from press_tracker.utils.constants import CAPACITY_TOLERANCE_L, VOLUME_TOLERANCE_L

COST_QUANTUM = Decimal("0.0001")


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class PressRunSnapshot:
    """The completing press run as the engine sees it."""

    press_run_id: int
    total_juice_volume_l: float
    allocation_mode: str = AllocationMode.WEIGHT.value


@dataclass(frozen=True)
class LoadInput:
    """One active load: fruit weight drawn from a lot."""

    lot_id: int
    weight_kg: float
    brix: Optional[float] = None


@dataclass(frozen=True)
class LotInfo:
    """Purchase lot facts needed for provenance and cost."""

    lot_id: int
    vendor_id: int
    variety_id: int
    variety_name: str
    total_cost: Decimal
    total_input_weight_kg: float
    is_depleted: bool = False


@dataclass(frozen=True)
class VesselAssignment:
    """
    Juice sent to one vessel.

    Attributes:
        vessel_id: Destination vessel
        gross_volume_l: Juice drawn from the press for this vessel
        transfer_loss_l: Juice lost on the way in (>= 0)
    """

    vessel_id: int
    gross_volume_l: float
    transfer_loss_l: float = 0.0

    @property
    def net_volume_l(self) -> float:
        return self.gross_volume_l - self.transfer_loss_l


@dataclass(frozen=True)
class VesselState:
    """
    Vessel capacity and occupancy read (under lock) at allocation time.

    Attributes:
        active_batch_id: Batch already fermenting in the vessel, if any
        current_volume_l: That batch's volume (0 when empty)
    """

    vessel_id: int
    capacity_l: float
    status: str
    code: str = ""
    active_batch_id: Optional[int] = None
    current_volume_l: float = 0.0

    @property
    def free_capacity_l(self) -> float:
        return self.capacity_l - self.current_volume_l


# =============================================================================
# Outputs
# =============================================================================


@dataclass(frozen=True)
class CompositionEntryState:
    """One lot's contribution to a batch (ledger row or new contribution)."""

    lot_id: int
    vendor_id: int
    variety_id: int
    input_weight_kg: float
    juice_volume_l: float
    material_cost: Decimal
    fraction_of_batch: float = 0.0
    avg_brix: Optional[float] = None
    variety_name: Optional[str] = None


@dataclass(frozen=True)
class LotShare:
    """
    A lot's share of one vessel assignment.

    gross_juice_volume_l is the share of the gross assignment; juice_volume_l
    is the share of the net volume recorded in the batch.
    """

    lot_id: int
    vendor_id: int
    variety_id: int
    variety_name: str
    fraction: float
    input_weight_kg: float
    gross_juice_volume_l: float
    juice_volume_l: float
    material_cost: Decimal
    avg_brix: Optional[float] = None

    def to_entry(self) -> CompositionEntryState:
        return CompositionEntryState(
            lot_id=self.lot_id,
            vendor_id=self.vendor_id,
            variety_id=self.variety_id,
            input_weight_kg=self.input_weight_kg,
            juice_volume_l=self.juice_volume_l,
            material_cost=self.material_cost,
            fraction_of_batch=self.fraction,
            avg_brix=self.avg_brix,
            variety_name=self.variety_name,
        )


@dataclass(frozen=True)
class VesselAllocation:
    """Planned effect of one assignment on its vessel."""

    assignment: VesselAssignment
    vessel: VesselState
    shares: List[LotShare]

    @property
    def is_merge(self) -> bool:
        return self.vessel.active_batch_id is not None

    @property
    def volume_before_l(self) -> float:
        return self.vessel.current_volume_l if self.is_merge else 0.0

    @property
    def volume_after_l(self) -> float:
        return self.volume_before_l + self.assignment.net_volume_l

    def contributions(self) -> List[CompositionEntryState]:
        return [share.to_entry() for share in self.shares]


@dataclass(frozen=True)
class AllocationPlan:
    """
    Complete, validated allocation for one press run completion.

    Attributes:
        lot_fractions: lot_id -> fraction of the press run's juice
        lot_weights_kg: lot_id -> fruit weight pressed in this run
        allocations: One VesselAllocation per assignment, in input order
    """

    press_run_id: int
    allocation_mode: str
    total_weight_kg: float
    total_juice_volume_l: float
    assigned_gross_volume_l: float
    lot_fractions: Dict[int, float]
    lot_weights_kg: Dict[int, float]
    allocations: List[VesselAllocation] = field(default_factory=list)

    @property
    def assigned_net_volume_l(self) -> float:
        return sum(a.assignment.net_volume_l for a in self.allocations)

    @property
    def unassigned_volume_l(self) -> float:
        return max(0.0, self.total_juice_volume_l - self.assigned_gross_volume_l)


# =============================================================================
# Fractions
# =============================================================================


def aggregate_loads_by_lot(loads: Iterable[LoadInput]) -> Dict[int, List[LoadInput]]:
    """Group loads by lot, preserving the order lots first appear."""
    grouped: Dict[int, List[LoadInput]] = {}
    for load in loads:
        grouped.setdefault(load.lot_id, []).append(load)
    return grouped


def _weighted_brix(loads: Sequence[LoadInput]) -> Optional[float]:
    measured = [load for load in loads if load.brix is not None]
    weight = sum(load.weight_kg for load in measured)
    if not measured or weight <= 0:
        return None
    return sum(load.brix * load.weight_kg for load in measured) / weight


def compute_lot_fractions(
    loads: Sequence[LoadInput],
    allocation_mode: str = AllocationMode.WEIGHT.value,
    press_run_id=None,
) -> Dict[int, float]:
    """
    Compute each lot's fraction of the press run's juice.

    Loads that share a lot are summed first, so a lot split over several
    loads is counted once.

    Args:
        loads: Active loads of the press run
        allocation_mode: "weight" or "sugar"
        press_run_id: Used in error messages only

    Returns:
        lot_id -> fraction, summing to 1.0

    Raises:
        ZeroInputWeightError: If total weight (or sugar weight) is not positive
        ValidationError: If sugar mode lacks brix readings

    Examples:
        >>> compute_lot_fractions([LoadInput(1, 600.0), LoadInput(2, 400.0)])
        {1: 0.6, 2: 0.4}
    """
    mode = AllocationMode(allocation_mode)
    grouped = aggregate_loads_by_lot(loads)

    total_weight = sum(load.weight_kg for load in loads)
    if total_weight <= 0:
        raise ZeroInputWeightError(press_run_id)

    if mode is AllocationMode.WEIGHT:
        basis = {lot_id: sum(l.weight_kg for l in group) for lot_id, group in grouped.items()}
    else:
        missing = [load.lot_id for load in loads if load.brix is None]
        if missing:
            raise ValidationError(
                [
                    "sugar allocation requires brix on every load "
                    f"(lots without: {sorted(set(missing))})"
                ]
            )
        basis = {
            lot_id: sum(l.weight_kg * l.brix / 100.0 for l in group)
            for lot_id, group in grouped.items()
        }

    total_basis = sum(basis.values())
    if total_basis <= 0:
        raise ZeroInputWeightError(press_run_id)

    return {lot_id: value / total_basis for lot_id, value in basis.items()}


def _allocate_cost(total_cost: Decimal, fraction: float) -> Decimal:
    cost = Decimal(str(total_cost)) * Decimal(repr(fraction))
    return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


# =============================================================================
# Validation
# =============================================================================


def validate_assignments(
    press_run: PressRunSnapshot,
    assignments: Sequence[VesselAssignment],
    vessel_states: Mapping[int, VesselState],
) -> float:
    """
    Check assignments against available juice and vessel capacity.

    Returns:
        Sum of gross assigned volume

    Raises:
        ValidationError: Empty list, duplicate vessels, bad volumes
        AssignedVolumeExceedsJuiceError: Gross sum > juice + 0.02 L
        VesselNotFound: Vessel state missing
        VesselUnavailableError: Vessel cleaning/in maintenance, or in use without a batch
        VesselCapacityExceededError: Net volume > free capacity + 0.001 L
    """
    errors = []
    if not assignments:
        errors.append("at least one vessel assignment is required")

    seen = set()
    for assignment in assignments:
        if assignment.vessel_id in seen:
            errors.append(f"vessel {assignment.vessel_id} is assigned more than once")
        seen.add(assignment.vessel_id)
        if assignment.gross_volume_l is None or assignment.gross_volume_l <= 0:
            errors.append(f"vessel {assignment.vessel_id}: volume must be greater than 0")
        elif assignment.transfer_loss_l is None or assignment.transfer_loss_l < 0:
            errors.append(f"vessel {assignment.vessel_id}: transfer loss cannot be negative")
        elif assignment.transfer_loss_l >= assignment.gross_volume_l:
            errors.append(f"vessel {assignment.vessel_id}: transfer loss must be less than volume")
    if errors:
        raise ValidationError(errors)

    assigned_gross = sum(a.gross_volume_l for a in assignments)
    if assigned_gross > press_run.total_juice_volume_l + VOLUME_TOLERANCE_L:
        raise AssignedVolumeExceedsJuiceError(assigned_gross, press_run.total_juice_volume_l)

    for assignment in assignments:
        vessel = vessel_states.get(assignment.vessel_id)
        if vessel is None:
            raise VesselNotFound(assignment.vessel_id)

        if vessel.status not in (VesselStatus.AVAILABLE.value, VesselStatus.IN_USE.value):
            raise VesselUnavailableError(vessel.vessel_id, vessel.status)
        if vessel.status == VesselStatus.IN_USE.value and vessel.active_batch_id is None:
            raise VesselUnavailableError(
                vessel.vessel_id, vessel.status, "in use without an active batch to merge into"
            )

        free = vessel.free_capacity_l
        if assignment.net_volume_l > free + CAPACITY_TOLERANCE_L:
            raise VesselCapacityExceededError(
                vessel.vessel_id,
                assignment.net_volume_l,
                vessel.current_volume_l,
                vessel.capacity_l,
            )

    return assigned_gross


# =============================================================================
# Planning
# =============================================================================


def allocate(
    press_run: PressRunSnapshot,
    loads: Sequence[LoadInput],
    assignments: Sequence[VesselAssignment],
    vessel_states: Mapping[int, VesselState],
    lots: Mapping[int, LotInfo],
) -> AllocationPlan:
    """
    Plan how a completed press run's juice is split across vessels and lots.

    All preconditions are checked before anything is returned, so a plan is
    only ever produced for an allocation that can be applied in full.

    Args:
        press_run: Press run snapshot with measured juice and allocation mode
        loads: Active loads
        assignments: Vessel assignments (gross volume + transfer loss)
        vessel_states: vessel_id -> VesselState read under lock
        lots: lot_id -> LotInfo for every lot referenced by a load

    Returns:
        AllocationPlan

    Raises:
        ServiceError subclasses from validate_assignments and
        compute_lot_fractions, plus PurchaseLotNotFound / LotDepletedError
    """
    assigned_gross = validate_assignments(press_run, assignments, vessel_states)

    total_weight = sum(load.weight_kg for load in loads)
    if total_weight <= 0:
        raise ZeroInputWeightError(press_run.press_run_id)

    grouped = aggregate_loads_by_lot(loads)
    for lot_id in grouped:
        lot = lots.get(lot_id)
        if lot is None:
            raise PurchaseLotNotFound(lot_id)
        if lot.is_depleted:
            raise LotDepletedError(lot_id)

    fractions = compute_lot_fractions(loads, press_run.allocation_mode, press_run.press_run_id)
    lot_weights = {lot_id: sum(l.weight_kg for l in group) for lot_id, group in grouped.items()}
    lot_brix = {lot_id: _weighted_brix(group) for lot_id, group in grouped.items()}

    allocations = []
    for assignment in assignments:
        # Share of the run's fruit weight that went into this vessel
        juice_share = (
            assignment.gross_volume_l / press_run.total_juice_volume_l
            if press_run.total_juice_volume_l > 0
            else 0.0
        )
        shares = []
        for lot_id, fraction in fractions.items():
            lot = lots[lot_id]
            shares.append(
                LotShare(
                    lot_id=lot_id,
                    vendor_id=lot.vendor_id,
                    variety_id=lot.variety_id,
                    variety_name=lot.variety_name,
                    fraction=fraction,
                    input_weight_kg=lot_weights[lot_id] * min(juice_share, 1.0),
                    gross_juice_volume_l=assignment.gross_volume_l * fraction,
                    juice_volume_l=assignment.net_volume_l * fraction,
                    material_cost=_allocate_cost(lot.total_cost, fraction),
                    avg_brix=lot_brix[lot_id],
                )
            )
        allocations.append(
            VesselAllocation(
                assignment=assignment,
                vessel=vessel_states[assignment.vessel_id],
                shares=shares,
            )
        )

    return AllocationPlan(
        press_run_id=press_run.press_run_id,
        allocation_mode=AllocationMode(press_run.allocation_mode).value,
        total_weight_kg=total_weight,
        total_juice_volume_l=press_run.total_juice_volume_l,
        assigned_gross_volume_l=assigned_gross,
        lot_fractions=fractions,
        lot_weights_kg=lot_weights,
        allocations=allocations,
    )


# =============================================================================
# Composition Reducer
# =============================================================================


def _merge_brix(
    existing: CompositionEntryState, incoming: CompositionEntryState
) -> Optional[float]:
    if existing.avg_brix is None:
        return incoming.avg_brix
    if incoming.avg_brix is None:
        return existing.avg_brix
    volume = existing.juice_volume_l + incoming.juice_volume_l
    if volume <= 0:
        return existing.avg_brix
    return (
        existing.avg_brix * existing.juice_volume_l + incoming.avg_brix * incoming.juice_volume_l
    ) / volume


def merge_compositions(
    existing: Sequence[CompositionEntryState],
    contributions: Sequence[CompositionEntryState],
    new_total_volume_l: float,
) -> List[CompositionEntryState]:
    """
    Fold new lot contributions into a batch composition.

    Entries for a lot already in the batch accumulate weight, volume and
    cost; other lots are appended. Every fraction is then recomputed as
    juice_volume_l / new_total_volume_l. The inputs are not modified.

    Transaction boundary: Pure computation (no database access).

    Args:
        existing: Current composition entries (empty for a new batch)
        contributions: Entries contributed by this allocation
        new_total_volume_l: Batch volume after the merge

    Returns:
        New list of entries, existing lots first in their original order

    Examples:
        A batch of 200 L of lot X receiving 60 L of lot 1 and 40 L of lot 2
        ends at 300 L with fractions 0.6667 / 0.2 / 0.1333.
    """
    merged: List[CompositionEntryState] = []
    index: Dict[int, int] = {}

    for entry in existing:
        if entry.lot_id in index:
            position = index[entry.lot_id]
            merged[position] = _accumulate(merged[position], entry)
        else:
            index[entry.lot_id] = len(merged)
            merged.append(entry)

    for entry in contributions:
        if entry.lot_id in index:
            position = index[entry.lot_id]
            merged[position] = _accumulate(merged[position], entry)
        else:
            index[entry.lot_id] = len(merged)
            merged.append(entry)

    if new_total_volume_l <= 0:
        return [replace(entry, fraction_of_batch=0.0) for entry in merged]

    return [
        replace(
            entry,
            fraction_of_batch=min(1.0, max(0.0, entry.juice_volume_l / new_total_volume_l)),
        )
        for entry in merged
    ]


def _accumulate(
    existing: CompositionEntryState, incoming: CompositionEntryState
) -> CompositionEntryState:
    return replace(
        existing,
        input_weight_kg=existing.input_weight_kg + incoming.input_weight_kg,
        juice_volume_l=existing.juice_volume_l + incoming.juice_volume_l,
        material_cost=Decimal(str(existing.material_cost)) + Decimal(str(incoming.material_cost)),
        avg_brix=_merge_brix(existing, incoming),
        variety_name=existing.variety_name or incoming.variety_name,
    )


def variety_fractions(entries: Iterable[CompositionEntryState]) -> List[tuple]:
    """(variety_name, fraction) pairs for naming and snapshots."""
    return [(entry.variety_name or "", entry.fraction_of_batch) for entry in entries]
