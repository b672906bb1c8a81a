"""Domain errors that carry an HTTP status.

Services also raise plain ``ValueError`` for bad input; the API maps it to 400.
"""


class LibraryError(Exception):
    status_code = 400


class ConflictError(LibraryError):
    """The request clashes with current state (stock, loan status, duplicates)."""

    status_code = 409


class AuthenticationError(LibraryError):
    status_code = 401


class PermissionDeniedError(LibraryError):
    status_code = 403


class NotFoundError(LibraryError, LookupError):
    status_code = 404


class PayloadTooLargeError(LibraryError):
    status_code = 413
