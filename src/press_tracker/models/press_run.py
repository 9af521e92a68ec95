"""
PressRun and PressRunLoad models.

A press run is one physical pressing session. Fruit is fed in as loads, each
drawing on one purchase lot. When the run completes, its juice is allocated
to vessels and the loads are frozen for traceability.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .base import BaseModel, SoftDeleteMixin
from .enums import AllocationMode, PressRunStatus
from press_tracker.utils.datetime_utils import utc_now


class PressRun(SoftDeleteMixin, BaseModel):
    """
    One pressing session producing juice from one or more fruit lots.

    Attributes:
        name: Date-sequenced name (e.g. "2024-03-15-02"), assigned at completion
        status: PressRunStatus value
        allocation_mode: AllocationMode value used when splitting juice
        total_input_weight_kg: Sum of active load weights
        total_juice_volume_l: Measured juice output, set at completion
        extraction_rate: Litres of juice per kilogram of fruit
        started_at / completed_at / cancelled_at: Lifecycle timestamps
        created_by / completed_by: Actor identifiers
        deleted_at: Soft delete timestamp
    """

    __tablename__ = "press_runs"

    name = Column(String(50), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default=PressRunStatus.IN_PROGRESS.value)
    allocation_mode = Column(String(20), nullable=False, default=AllocationMode.WEIGHT.value)

    total_input_weight_kg = Column(Float, nullable=False, default=0.0)
    total_juice_volume_l = Column(Float, nullable=True)
    extraction_rate = Column(Float, nullable=True)

    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_by = Column(String(100), nullable=True)
    completed_by = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    loads = relationship(
        "PressRunLoad",
        back_populates="press_run",
        cascade="all, delete-orphan",
        order_by="PressRunLoad.load_sequence",
    )
    # passive_deletes lets the database SET NULL on origin_press_run_id
    batches = relationship("Batch", back_populates="origin_press_run", passive_deletes=True)

    __table_args__ = (
        Index("idx_press_run_status", "status"),
        Index("idx_press_run_completed_at", "completed_at"),
        CheckConstraint(
            "total_input_weight_kg >= 0", name="ck_press_run_weight_non_negative"
        ),
        CheckConstraint(
            "total_juice_volume_l IS NULL OR total_juice_volume_l >= 0",
            name="ck_press_run_juice_non_negative",
        ),
    )

    @property
    def active_loads(self):
        """Loads that have not been soft-deleted, in sequence order."""
        return [load for load in self.loads if not load.is_deleted]

    def __repr__(self) -> str:
        return (
            f"PressRun(id={self.id}, name={self.name!r}, status='{self.status}', "
            f"total_input_weight_kg={self.total_input_weight_kg})"
        )


class PressRunLoad(SoftDeleteMixin, BaseModel):
    """
    One fruit lot's weight contribution to a press run.

    Attributes:
        press_run_id: FK to PressRun
        lot_id: FK to PurchaseLot
        load_sequence: Position within the run, consecutive 1..n among active loads
        input_weight_kg: Fruit weight pressed
        brix_measured: Optional sugar reading, used by sugar-weighted allocation
        deleted_at: Soft delete timestamp
    """

    __tablename__ = "press_run_loads"

    press_run_id = Column(
        Integer, ForeignKey("press_runs.id", ondelete="CASCADE"), nullable=False
    )
    lot_id = Column(Integer, ForeignKey("purchase_lots.id", ondelete="RESTRICT"), nullable=False)
    load_sequence = Column(Integer, nullable=False)
    input_weight_kg = Column(Float, nullable=False)
    brix_measured = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)

    press_run = relationship("PressRun", back_populates="loads")
    lot = relationship("PurchaseLot", back_populates="loads")

    __table_args__ = (
        Index("idx_press_run_load_run", "press_run_id"),
        Index("idx_press_run_load_lot", "lot_id"),
        Index("idx_press_run_load_sequence", "press_run_id", "load_sequence"),
        CheckConstraint("input_weight_kg > 0", name="ck_press_run_load_weight_positive"),
        CheckConstraint("load_sequence > 0", name="ck_press_run_load_sequence_positive"),
        CheckConstraint(
            "brix_measured IS NULL OR (brix_measured >= 0 AND brix_measured <= 40)",
            name="ck_press_run_load_brix_range",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"PressRunLoad(id={self.id}, press_run_id={self.press_run_id}, "
            f"seq={self.load_sequence}, lot_id={self.lot_id}, kg={self.input_weight_kg})"
        )
