"""
Error kinds raised by the lending core.

Every error carries a stable ``kind`` string and a human-readable message.
All of them derive from ValueError, which is what callers of the core
have always caught for rejected operations.
"""

from typing import Any, Dict


class LendingError(ValueError):
    """Base class for all lending core errors"""

    kind = "LENDING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.kind, "message": self.message}


class InvalidInput(LendingError):
    """Non-positive amounts, rates or tenure, malformed NAV"""

    kind = "INVALID_INPUT"


class InvalidAmount(InvalidInput):
    """Payment amount must be positive"""

    kind = "INVALID_AMOUNT"


class InvalidLoanState(LendingError):
    """Operation attempted outside the loan's legal state set"""

    kind = "INVALID_LOAN_STATE"


class InvalidApplicationState(LendingError):
    """Operation attempted outside the application's legal state set"""

    kind = "INVALID_APPLICATION_STATE"


class InsufficientCollateral(LendingError):
    """Requested amount exceeds the eligible loan amount"""

    kind = "INSUFFICIENT_COLLATERAL"


class DivisionUndefined(LendingError, ArithmeticError):
    """Margin check against zero outstanding"""

    kind = "DIVISION_UNDEFINED"


class ConcurrentModification(LendingError):
    """Entity changed by another operation since it was read"""

    kind = "CONCURRENT_MODIFICATION"


class EntityNotFound(LendingError, LookupError):
    """Referenced entity does not exist"""

    kind = "NOT_FOUND"
