"""
Database models for the revenue distributor.
"""

from .base import Base
from .recipient_share import RecipientShareRecord

__all__ = [
    "Base",
    "RecipientShareRecord",
]
