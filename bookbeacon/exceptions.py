class LibraryError(Exception):
    """Base exception for library record errors."""


# Not-found kind
class NotFoundError(LibraryError, LookupError):
    """Unknown id or natural key."""


class BookNotFoundError(NotFoundError):
    """Requested book does not exist."""


class MemberNotFoundError(NotFoundError):
    """Requested member does not exist."""


class TransactionNotFoundError(NotFoundError):
    """Requested transaction does not exist."""


# Conflict kind
class ConflictError(LibraryError, ValueError):
    """A unique natural key (ISBN, membership ID, email) is already taken."""


# Rule-violation kind
class RuleViolationError(LibraryError, ValueError):
    """The operation breaks a lending business rule."""


class BookUnavailableError(RuleViolationError):
    """No copies of the book are on the shelf."""


class LoanLimitReachedError(RuleViolationError):
    """The member already holds the maximum number of books."""


class AlreadyReturnedError(RuleViolationError):
    """The transaction was already closed by a return."""


class QuantityBelowLoansError(RuleViolationError):
    """A new quantity would leave fewer copies than are currently on loan."""


class HasLoanHistoryError(RuleViolationError):
    """The record is referenced by borrowing transactions and cannot be deleted."""


class MemberInactiveError(RuleViolationError):
    """The member is not Active and may not borrow."""
