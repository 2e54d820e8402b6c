"""Domain error types and shared error messages.

Every error raised by the services derives from ``DomainError`` which is a
``ValueError`` so route handlers can keep catching ``ValueError``. Each class
carries the HTTP status code the API answers with.
"""


class DomainError(ValueError):
    """Base class for errors detected by the services."""

    status_code = 400


class ValidationError(DomainError):
    """Malformed or missing input."""


class NotFoundError(DomainError):
    """A referenced year, category, or transaction does not exist."""

    status_code = 404


class InvalidStateError(DomainError):
    """Operation attempted on the wrong category level or against a business rule."""


class ConflictError(DomainError):
    """Uniqueness violation."""


class PersistenceFailure(DomainError):
    """The underlying store rejected the primary write."""

    status_code = 500


class AuthenticationError(DomainError):
    status_code = 401


class NonCriticalRollupFailure(Exception):
    """Recalculation of derived rows failed after the primary write succeeded.

    Never raised to API callers; it is carried inside a
    ``RecalculationOutcome`` and logged at the service boundary.
    """

    def __init__(self, year_id: int, category_type, cause: BaseException) -> None:
        self.year_id = year_id
        self.category_type = category_type
        self.cause = cause
        kind = category_type.value if category_type is not None else "all"
        super().__init__(f"Recalculation failed for year {year_id} ({kind}): {cause}")


def year_not_found(year_id: int) -> str:
    return f"Budget year {year_id} not found"


def fiscal_year_not_found(year: int) -> str:
    return f"Fiscal year {year} not found"


def category_not_found(category_id: int) -> str:
    return f"Category {category_id} not found"


def transaction_not_found(transaction_id: int) -> str:
    return f"Transaction {transaction_id} not found"


def manual_entry_forbidden(level: int, action: str = "enter") -> str:
    return (
        f"Cannot {action} data manually for level {level}. Only level 3 accepts "
        "manual entry; levels 1 and 2 are computed from the level below."
    )


def duplicate_transaction() -> str:
    return "Duplicate: this category already has data for that year"
