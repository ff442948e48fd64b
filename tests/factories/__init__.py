"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .saved_segment import (
    SavedSegmentFactory,
    FavoriteSavedSegmentFactory,
    UntitledSavedSegmentFactory,
)
from .crm_person import CrmPersonFactory

__all__ = [
    "SavedSegmentFactory",
    "FavoriteSavedSegmentFactory",
    "UntitledSavedSegmentFactory",
    "CrmPersonFactory",
]
