"""
Custom exceptions for loyalty ledger business logic.

Every error raised by the earning, spending, adjustment and query operations
derives from LoyaltyError, carries a human-readable message suitable for
direct display and a stable machine-readable code.
"""


class LoyaltyError(Exception):
    """Base exception for all loyalty business logic errors."""

    def __init__(self, message: str, code: str = "LOYALTY_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(LoyaltyError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class UserNotFoundError(NotFoundError):
    """User has no loyalty state."""

    def __init__(self, identifier=None):
        super().__init__("User", identifier)


class ValidationError(LoyaltyError):
    """Invalid input data or a violated business rule."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InsufficientBalanceError(LoyaltyError):
    """Not enough balance for the operation."""

    def __init__(self, current: int, required: int, currency: str = "points"):
        self.current = current
        self.required = required
        message = f"Insufficient {currency}. Current: {current}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_BALANCE")


class InsufficientPointsError(InsufficientBalanceError):
    """Not enough points for the operation."""

    def __init__(self, current: int, required: int):
        super().__init__(current, required, "points")
        self.code = "INSUFFICIENT_POINTS"


class LockTimeoutError(LoyaltyError):
    """Another operation held the user's lock for too long."""

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is busy with another points operation, try again",
            "LOCK_TIMEOUT"
        )


class LedgerError(LoyaltyError):
    """Ledger append or projection update failed and was rolled back."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message, "LEDGER_ERROR")


class ConfigurationError(LoyaltyError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
