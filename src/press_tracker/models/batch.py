"""
Batch and BatchComposition models.

A batch is a quantity of juice fermenting or aging in a vessel. Its
composition entries record which purchase lots it came from, in what share
and at what material cost. Entries are created when a press run completes and
are only changed afterwards by merges into the same batch.
"""

from decimal import Decimal

from sqlalchemy import (
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
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, SoftDeleteMixin
from .enums import ACTIVE_BATCH_STATUSES, BatchStatus
from press_tracker.utils.datetime_utils import utc_now


class Batch(SoftDeleteMixin, BaseModel):
    """
    Juice fermenting or aging in a vessel, with provenance.

    Attributes:
        name: Unique batch name (e.g. "2025-09-19_TK03_GRAV")
        vessel_id: FK to Vessel; null once the batch has left its vessel
        status: BatchStatus value
        initial_volume_l: Volume when the batch was created
        current_volume_l: Volume now, including merged juice
        origin_press_run_id: Press run that created the batch (SET NULL on hard delete)
        start_date: When the batch was started
        deleted_at: Soft delete timestamp
    """

    __tablename__ = "batches"

    name = Column(String(100), nullable=False, unique=True)
    vessel_id = Column(Integer, ForeignKey("vessels.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default=BatchStatus.FERMENTATION.value)

    initial_volume_l = Column(Float, nullable=False)
    current_volume_l = Column(Float, nullable=False)

    origin_press_run_id = Column(
        Integer, ForeignKey("press_runs.id", ondelete="SET NULL"), nullable=True
    )
    start_date = Column(DateTime, nullable=False, default=utc_now)
    end_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    vessel = relationship("Vessel", back_populates="batches")
    origin_press_run = relationship("PressRun", back_populates="batches")
    compositions = relationship(
        "BatchComposition",
        back_populates="batch",
        cascade="all, delete-orphan",
    )
    merge_history = relationship(
        "BatchMergeHistory",
        back_populates="target_batch",
        foreign_keys="BatchMergeHistory.target_batch_id",
        order_by="BatchMergeHistory.id",
    )

    __table_args__ = (
        Index("idx_batch_vessel", "vessel_id"),
        Index("idx_batch_status", "status"),
        Index("idx_batch_origin_press_run", "origin_press_run_id"),
        CheckConstraint("initial_volume_l >= 0", name="ck_batch_initial_volume_non_negative"),
        CheckConstraint("current_volume_l >= 0", name="ck_batch_current_volume_non_negative"),
    )

    @property
    def is_active(self) -> bool:
        """True while the batch occupies its vessel and is still in the cellar."""
        return not self.is_deleted and self.status in ACTIVE_BATCH_STATUSES

    def __repr__(self) -> str:
        return (
            f"Batch(id={self.id}, name='{self.name}', vessel_id={self.vessel_id}, "
            f"current_volume_l={self.current_volume_l})"
        )


class BatchComposition(BaseModel):
    """
    One lot's fractional contribution to a batch.

    Attributes:
        batch_id: FK to Batch
        lot_id: FK to PurchaseLot
        vendor_id / variety_id: Denormalized provenance from the lot
        input_weight_kg: Fruit weight attributed to this batch
        juice_volume_l: Juice volume attributed to this batch
        fraction_of_batch: juice_volume_l / batch.current_volume_l
        material_cost: Fruit cost attributed to this batch
        avg_brix: Weight-averaged brix of the contributing loads, if measured
    """

    __tablename__ = "batch_compositions"

    batch_id = Column(Integer, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False)
    lot_id = Column(Integer, ForeignKey("purchase_lots.id", ondelete="RESTRICT"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False)
    variety_id = Column(
        Integer, ForeignKey("fruit_varieties.id", ondelete="RESTRICT"), nullable=False
    )

    input_weight_kg = Column(Float, nullable=False, default=0.0)
    juice_volume_l = Column(Float, nullable=False, default=0.0)
    fraction_of_batch = Column(Float, nullable=False, default=0.0)
    material_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0.0000"))
    avg_brix = Column(Float, nullable=True)

    batch = relationship("Batch", back_populates="compositions")
    lot = relationship("PurchaseLot")
    variety = relationship("FruitVariety")
    vendor = relationship("Vendor")

    __table_args__ = (
        UniqueConstraint("batch_id", "lot_id", name="uq_batch_composition_batch_lot"),
        Index("idx_batch_composition_batch", "batch_id"),
        Index("idx_batch_composition_lot", "lot_id"),
        CheckConstraint("input_weight_kg >= 0", name="ck_batch_composition_weight_non_negative"),
        CheckConstraint("juice_volume_l >= 0", name="ck_batch_composition_volume_non_negative"),
        CheckConstraint(
            "fraction_of_batch >= 0 AND fraction_of_batch <= 1",
            name="ck_batch_composition_fraction_range",
        ),
        CheckConstraint("material_cost >= 0", name="ck_batch_composition_cost_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"BatchComposition(batch_id={self.batch_id}, lot_id={self.lot_id}, "
            f"fraction={self.fraction_of_batch:.6f})"
        )
