"""
FruitVariety model for the fruit variety catalog.

Variety names drive the variety code embedded in batch names
(e.g. "Northern Spy" -> NOSP).
"""

from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel


class FruitVariety(BaseModel):
    """
    Fruit variety (e.g. "Gravenstein", "Kingston Black").

    Attributes:
        name: Unique display name
        notes: Optional tasting or growing notes
    """

    __tablename__ = "fruit_varieties"

    name = Column(String(200), nullable=False, unique=True)
    notes = Column(Text, nullable=True)

    purchase_lots = relationship("PurchaseLot", back_populates="variety")
