"""Domain errors raised by the availability and reservation services.

Routes never build HTTP errors for these themselves; the handlers registered in
``app.main`` map each class to its status code.
"""


class BookingError(Exception):
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(BookingError):
    """Unknown or inactive booking page, or a booking the caller cannot see."""

    status_code = 404


class ValidationError(BookingError):
    """Malformed date, missing required fields, inverted business hours."""

    status_code = 400


class ConflictError(BookingError):
    """The requested window is already taken; clients should re-fetch and retry."""

    status_code = 409


class UpstreamUnavailable(BookingError):
    """An external calendar could not be queried. Never surfaced to read callers."""

    status_code = 503
