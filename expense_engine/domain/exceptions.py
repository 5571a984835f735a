"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class LedgerSourceError(DomainException):
    """Ledger source returned an error or is unavailable"""

    pass


class InvariantViolationError(DomainException):
    """A write would break a data invariant (duplicate instance, split sum)"""

    pass


class ConfigurationError(DomainException):
    """Definition or rule is misconfigured for the requested operation"""

    pass


class NotFoundError(DomainException):
    """Referenced record does not exist"""

    pass


class InvalidStateError(DomainException):
    """Record is not in a state that allows the requested transition"""

    pass
