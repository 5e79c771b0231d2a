"""
Database models for the loyalty points core.
Append-only points ledger plus the per-user loyalty projection.
"""
from .loyalty_points import (
    # Enums
    PointsTransactionType,
    PointsSource,
    # Models
    PointsLedger,
    BACKING_TYPES,
    DEFAULT_DESCRIPTIONS,
)
from .loyalty_state import ProcessedOrder, UserLoyaltyState

__all__ = [
    'PointsTransactionType',
    'PointsSource',
    'PointsLedger',
    'BACKING_TYPES',
    'DEFAULT_DESCRIPTIONS',
    'UserLoyaltyState',
    'ProcessedOrder',
]
