"""Error taxonomy for ledger operations and the HTTP status each maps to."""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    pass


class NotFound(LedgerError):
    status_code = 404


class InsufficientStock(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class Conflict(LedgerError):
    pass


class InvalidArgument(LedgerError):
    pass


class AuthenticationError(LedgerError):
    status_code = 401


class AuthorizationError(LedgerError):
    status_code = 403


class StorageError(LedgerError):
    status_code = 500
