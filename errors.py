from enum import Enum


class ErrorKind(str, Enum):
    unauthorized = "unauthorized"
    not_found = "not_found"
    forbidden = "forbidden"
    invalid_input = "invalid_input"
    inactive_allocation = "inactive_allocation"


class LedgerError(ValueError):
    kind: ErrorKind = ErrorKind.invalid_input

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(LedgerError):
    kind = ErrorKind.unauthorized

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class NotFound(LedgerError):
    kind = ErrorKind.not_found


class Forbidden(LedgerError):
    kind = ErrorKind.forbidden


class InvalidInput(LedgerError):
    kind = ErrorKind.invalid_input


class InactiveAllocation(LedgerError):
    kind = ErrorKind.inactive_allocation


HTTP_STATUS_BY_KIND = {
    ErrorKind.unauthorized: 401,
    ErrorKind.forbidden: 403,
    ErrorKind.not_found: 404,
    ErrorKind.invalid_input: 400,
    ErrorKind.inactive_allocation: 409,
}
