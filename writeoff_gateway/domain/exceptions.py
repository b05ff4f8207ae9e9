"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class AggregatorError(DomainException):
    """Aggregator API returned an error or is unavailable"""

    pass


class ClassifierError(DomainException):
    """Classifier API returned an error or is unavailable"""

    pass


class ClassificationValidationError(DomainException):
    """Classifier answer is malformed or out of range"""

    pass


class PersistenceError(DomainException):
    """Storage write failed; the affected batch was rolled back"""

    pass


class AuthorizationError(DomainException):
    """Scoped update matched no row owned by the user"""

    pass


class SyncInProgressError(DomainException):
    """Another sync run holds the user's lease"""

    pass


class SyncLeaseLostError(DomainException):
    """Sync lease expired and was taken over by another run; this run must stop writing"""

    pass


class ProfileNotFoundError(DomainException):
    """No profile stored for the user"""

    pass


class MissingAccessTokenError(DomainException):
    """User has not linked a bank through the aggregator"""

    pass


class TransactionNotFoundError(DomainException):
    """Transaction does not exist or is not visible to the user"""

    pass


class InvalidTransitionError(DomainException):
    """Requested review state change is not allowed"""

    pass
