class LedgerError(ValueError):
    status_code = 400


class NotFound(LedgerError):
    status_code = 404


class Forbidden(LedgerError):
    status_code = 403


class InvalidState(LedgerError):
    status_code = 409


class InsufficientBalance(LedgerError):
    status_code = 400


class ValidationFailed(LedgerError):
    status_code = 422
