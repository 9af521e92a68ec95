"""
PurchaseLot model for purchased fruit lots.

A purchase lot is one quantity of one variety bought from one vendor. It is
owned by the purchase ledger; pressing only advances its allocation counter
and sets the depletion fields once the whole lot has been pressed.
"""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, SoftDeleteMixin


class PurchaseLot(SoftDeleteMixin, BaseModel):
    """
    Fruit purchase lot, trackable to depletion.

    Attributes:
        variety_id: FK to FruitVariety
        vendor_id: FK to Vendor
        lot_code: Optional vendor/bin lot code
        total_input_weight_kg: Purchased weight in kilograms
        total_cost: Purchase cost of the whole lot
        allocated_weight_kg: Running total of weight pressed by completed runs
        is_depleted: True once allocated weight reaches total input weight
        depleted_at: When the lot was marked depleted
        depleted_by: Actor that completed the depleting press run
        depleted_in_press_run_id: Press run that depleted the lot
        deleted_at: Soft delete timestamp
    """

    __tablename__ = "purchase_lots"

    variety_id = Column(
        Integer, ForeignKey("fruit_varieties.id", ondelete="RESTRICT"), nullable=False
    )
    vendor_id = Column(Integer, ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False)
    lot_code = Column(String(100), nullable=True)
    purchase_date = Column(DateTime, nullable=True)

    total_input_weight_kg = Column(Float, nullable=False)
    total_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0.0000"))

    allocated_weight_kg = Column(Float, nullable=False, default=0.0)
    is_depleted = Column(Boolean, nullable=False, default=False)
    depleted_at = Column(DateTime, nullable=True)
    depleted_by = Column(String(100), nullable=True)
    depleted_in_press_run_id = Column(
        Integer, ForeignKey("press_runs.id", ondelete="SET NULL"), nullable=True
    )

    notes = Column(Text, nullable=True)

    variety = relationship("FruitVariety", back_populates="purchase_lots")
    vendor = relationship("Vendor", back_populates="purchase_lots")
    loads = relationship("PressRunLoad", back_populates="lot")

    __table_args__ = (
        Index("idx_purchase_lot_variety", "variety_id"),
        Index("idx_purchase_lot_vendor", "vendor_id"),
        Index("idx_purchase_lot_depleted", "is_depleted"),
        CheckConstraint("total_input_weight_kg > 0", name="ck_purchase_lot_weight_positive"),
        CheckConstraint("total_cost >= 0", name="ck_purchase_lot_cost_non_negative"),
        CheckConstraint(
            "allocated_weight_kg >= 0", name="ck_purchase_lot_allocated_non_negative"
        ),
    )

    @property
    def remaining_weight_kg(self) -> float:
        """Weight not yet pressed (never negative)."""
        return max(0.0, (self.total_input_weight_kg or 0.0) - (self.allocated_weight_kg or 0.0))

    def __repr__(self) -> str:
        return (
            f"PurchaseLot(id={self.id}, variety_id={self.variety_id}, "
            f"weight={self.total_input_weight_kg}, depleted={self.is_depleted})"
        )

    def to_dict(self, exclude=()) -> dict:
        result = super().to_dict(exclude)
        result["remaining_weight_kg"] = self.remaining_weight_kg
        if self.variety is not None:
            result["variety_name"] = self.variety.name
        return result
