"""Typed failures raised by the lending services.

Each class has a stable ``code`` and the HTTP status the API answers with,
so callers can tell every failure mode apart.
"""


class LendingError(Exception):
    code = "lending_error"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(LendingError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Please login to borrow books"


class Forbidden(LendingError):
    code = "forbidden"
    status_code = 403
    default_message = "Administrator access required"


class NotFound(LendingError):
    code = "not_found"
    status_code = 404
    default_message = "Record not found"


class Unavailable(LendingError):
    code = "unavailable"
    status_code = 409
    default_message = "This book is currently not available for borrowing"


class AlreadyBorrowed(LendingError):
    code = "already_borrowed"
    status_code = 409
    default_message = "You have already borrowed this book"


class InvalidState(LendingError):
    code = "invalid_state"
    status_code = 409
    default_message = "Borrowing is not active"


class Conflict(LendingError):
    code = "conflict"
    status_code = 409
    default_message = "Request conflicts with the current state"


class InvalidArgument(LendingError):
    code = "invalid_argument"
    status_code = 422
    default_message = "Invalid argument"


class StoreError(LendingError):
    code = "store_error"
    status_code = 503
    default_message = "Data store failure"
