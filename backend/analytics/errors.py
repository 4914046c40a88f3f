"""
Analytics outcome taxonomy.

Only an unknown item identifier is raised; data sparsity and undefined
statistics are expected in a sparse ledger and travel as SkipReason values.
"""

import uuid
from enum import Enum


class ItemNotFoundError(LookupError):
    """Referenced item does not exist (stale identifier from the caller)."""

    def __init__(self, item_id: uuid.UUID | str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class CategoryNotFoundError(LookupError):
    def __init__(self, category_id: uuid.UUID | str):
        self.category_id = category_id
        super().__init__(f"Category not found: {category_id}")


class SkipReason(str, Enum):
    """Why a profile or correlation unit produced no stored result."""

    INSUFFICIENT_DATA = "insufficient_data"
    UNDEFINED_VARIANCE = "undefined_variance"
    ITEM_NOT_FOUND = "item_not_found"
    ERROR = "error"
