"""
Purchase Lot Service - the purchase ledger as seen by the pressing engine.

This module provides functions for:
- Registering fruit purchase lots (vendor/variety created on demand)
- Looking up lots for pressing
- Advancing the allocated-weight counter when a press run completes
- Marking lots depleted once fully pressed

Session Management Pattern:
- All public functions accept session=None parameter
- If session provided, use it directly
- If session is None, create a new session via session_scope()
"""

from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, joinedload

from press_tracker.models import FruitVariety, PurchaseLot, Vendor
from press_tracker.services import audit_service
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    LotDepletedError,
    PurchaseLotNotFound,
    ValidationError,
)
from press_tracker.services.logging_utils import get_service_logger, log_operation
from press_tracker.utils.constants import DEPLETION_TOLERANCE_KG
from press_tracker.utils.datetime_utils import utc_now

logger = get_service_logger(__name__)


def get_or_create_vendor(session: Session, name: str) -> Vendor:
    """Find a vendor by name, creating it when missing."""
    vendor = session.query(Vendor).filter(Vendor.name == name).first()
    if vendor is None:
        vendor = Vendor(name=name)
        session.add(vendor)
        session.flush()
    return vendor


def get_or_create_variety(session: Session, name: str) -> FruitVariety:
    """Find a fruit variety by name, creating it when missing."""
    variety = session.query(FruitVariety).filter(FruitVariety.name == name).first()
    if variety is None:
        variety = FruitVariety(name=name)
        session.add(variety)
        session.flush()
    return variety


def create_lot(
    vendor_name: str,
    variety_name: str,
    total_input_weight_kg: float,
    total_cost,
    *,
    lot_code: Optional[str] = None,
    purchase_date: Optional[datetime] = None,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Register a purchased fruit lot.

    Args:
        vendor_name: Vendor the fruit was bought from
        variety_name: Fruit variety
        total_input_weight_kg: Purchased weight (kg, > 0)
        total_cost: Cost of the whole lot (>= 0)
        lot_code: Optional lot/bin code
        purchase_date: Optional purchase date
        notes: Optional notes
        actor_id: Acting user
        session: Optional database session

    Returns:
        Dictionary representation of the new lot

    Raises:
        ValidationError: If weight or cost is out of range
    """
    errors = []
    if total_input_weight_kg is None or total_input_weight_kg <= 0:
        errors.append("total_input_weight_kg must be greater than 0")
    cost = Decimal(str(total_cost)) if total_cost is not None else None
    if cost is None or cost < 0:
        errors.append("total_cost must be 0 or greater")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        vendor = get_or_create_vendor(session, vendor_name)
        variety = get_or_create_variety(session, variety_name)

        lot = PurchaseLot(
            vendor_id=vendor.id,
            variety_id=variety.id,
            lot_code=lot_code,
            purchase_date=purchase_date,
            total_input_weight_kg=float(total_input_weight_kg),
            total_cost=cost,
            notes=notes,
        )
        session.add(lot)
        session.flush()

        audit_service.publish_create(
            session,
            "purchase_lots",
            lot.id,
            {"vendor": vendor_name, "variety": variety_name, "weight_kg": lot.total_input_weight_kg},
            actor_id,
            "Purchase lot registered",
        )
        return lot.to_dict()


def get_lot(lot_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Get a lot as {weight_kg, total_cost, depleted, ...}.

    Raises:
        PurchaseLotNotFound: If the lot is missing or soft-deleted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        lot = load_lot(session, lot_id)
        result = lot.to_dict()
        result["weight_kg"] = lot.total_input_weight_kg
        result["depleted"] = lot.is_depleted
        return result


def load_lot(session: Session, lot_id: int, *, for_update: bool = False) -> PurchaseLot:
    """
    Load a live lot ORM object inside the caller's transaction.

    Raises:
        PurchaseLotNotFound: If the lot is missing or soft-deleted
    """
    query = (
        session.query(PurchaseLot)
        .options(joinedload(PurchaseLot.variety))
        .filter(PurchaseLot.id == lot_id, PurchaseLot.deleted_at.is_(None))
    )
    if for_update:
        query = query.with_for_update()
    lot = query.first()
    if lot is None:
        raise PurchaseLotNotFound(lot_id)
    return lot


def ensure_not_depleted(lot: PurchaseLot) -> None:
    """Raise LotDepletedError when the lot has been fully pressed."""
    if lot.is_depleted:
        raise LotDepletedError(lot.id)


def record_allocation(
    session: Session,
    lot: PurchaseLot,
    weight_kg: float,
    actor_id: Optional[str],
    press_run_id: int,
) -> bool:
    """
    Add pressed weight to a lot's running counter and deplete it when full.

    Args:
        session: Session of the enclosing transaction
        lot: Lot being drawn on (locked by the caller)
        weight_kg: Weight pressed from the lot in this press run
        actor_id: Acting user
        press_run_id: Completing press run

    Returns:
        True if this call marked the lot depleted
    """
    lot.allocated_weight_kg = (lot.allocated_weight_kg or 0.0) + weight_kg
    if not lot.is_depleted and (
        lot.allocated_weight_kg >= lot.total_input_weight_kg - DEPLETION_TOLERANCE_KG
    ):
        mark_depleted(session, lot, actor_id, press_run_id)
        return True
    return False


def mark_depleted(
    session: Session,
    lot: PurchaseLot,
    actor_id: Optional[str],
    press_run_id: Optional[int],
) -> None:
    """
    Mark a lot depleted, recording when, by whom and in which press run.

    Raises:
        LotDepletedError: If the lot is already depleted
    """
    ensure_not_depleted(lot)

    lot.is_depleted = True
    lot.depleted_at = utc_now()
    lot.depleted_by = actor_id
    lot.depleted_in_press_run_id = press_run_id
    session.flush()

    audit_service.publish_update(
        session,
        "purchase_lots",
        lot.id,
        {"is_depleted": False},
        {"is_depleted": True, "depleted_in_press_run_id": press_run_id},
        actor_id,
        "Purchase lot fully pressed",
    )
    log_operation(
        logger,
        operation="mark_depleted",
        outcome="success",
        lot_id=lot.id,
        press_run_id=press_run_id,
        allocated_weight_kg=lot.allocated_weight_kg,
    )


def list_available_lots(*, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """List lots that still have fruit to press, oldest first."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        lots = (
            session.query(PurchaseLot)
            .options(joinedload(PurchaseLot.variety))
            .filter(PurchaseLot.deleted_at.is_(None), PurchaseLot.is_depleted.is_(False))
            .order_by(PurchaseLot.id)
            .all()
        )
        return [lot.to_dict() for lot in lots]
