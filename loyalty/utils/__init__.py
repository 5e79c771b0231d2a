"""
Utility modules for the loyalty core.
"""
from .logging_config import setup_logging
from .exceptions import (
    LoyaltyError,
    NotFoundError,
    UserNotFoundError,
    ValidationError,
    InsufficientBalanceError,
    InsufficientPointsError,
    LockTimeoutError,
    LedgerError,
    ConfigurationError
)
from .locks import UserLockRegistry, user_locks

__all__ = [
    'setup_logging',
    'LoyaltyError',
    'NotFoundError',
    'UserNotFoundError',
    'ValidationError',
    'InsufficientBalanceError',
    'InsufficientPointsError',
    'LockTimeoutError',
    'LedgerError',
    'ConfigurationError',
    'UserLockRegistry',
    'user_locks',
]
