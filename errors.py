class LedgerError(ValueError):
    """Base class for failures a caller can recover from."""


class NotFound(LedgerError):
    pass


class Forbidden(LedgerError):
    pass


class ValidationFailed(LedgerError):
    pass


class Conflict(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass
