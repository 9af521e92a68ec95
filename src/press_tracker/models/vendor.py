"""
Vendor model for fruit suppliers.

Vendors are owned by the purchasing catalog; the pressing engine only
reads them to stamp provenance onto batch compositions.
"""

from sqlalchemy import Column, String, Text, Boolean, Index
from sqlalchemy.orm import relationship

from .base import BaseModel


class Vendor(BaseModel):
    """
    Vendor (orchard, grower or broker) that fruit lots are bought from.

    Attributes:
        name: Vendor name
        notes: Optional notes
        is_active: Soft delete flag
    """

    __tablename__ = "vendors"

    name = Column(String(200), nullable=False)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    purchase_lots = relationship("PurchaseLot", back_populates="vendor")

    __table_args__ = (Index("idx_vendor_name", "name"),)
