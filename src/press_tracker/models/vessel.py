"""
Vessel model for fermentation containers.

Vessels belong to the cellar registry. The pressing engine reads capacity
and status, clears the reserved-for-pressing flag after allocation and marks
the vessel in use.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Float, Index, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel, SoftDeleteMixin
from .enums import VesselStatus


class Vessel(SoftDeleteMixin, BaseModel):
    """
    Physical fermentation container with fixed capacity.

    Attributes:
        name: Display name (e.g. "Tank 3")
        code: Short code used in batch names (e.g. "TK03")
        capacity_l: Working capacity in litres
        status: VesselStatus value
        reserved_for_pressing: Set while a press run intends to fill this vessel
        location: Optional cellar location
        deleted_at: Soft delete timestamp
    """

    __tablename__ = "vessels"

    name = Column(String(100), nullable=False)
    code = Column(String(20), nullable=True)
    capacity_l = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default=VesselStatus.AVAILABLE.value)
    reserved_for_pressing = Column(Boolean, nullable=False, default=False)
    location = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    batches = relationship("Batch", back_populates="vessel")

    __table_args__ = (
        Index("idx_vessel_status", "status"),
        CheckConstraint("capacity_l > 0", name="ck_vessel_capacity_positive"),
    )

    @property
    def label(self) -> str:
        """Code used when naming batches; falls back to the name."""
        if self.code:
            return self.code.upper()
        return "".join(ch for ch in (self.name or "").upper() if ch.isalnum()) or f"V{self.id}"

    def __repr__(self) -> str:
        return (
            f"Vessel(id={self.id}, name='{self.name}', capacity_l={self.capacity_l}, "
            f"status='{self.status}')"
        )
