"""Exceptions reported to callers of the calendar and visibility engines."""


class InvalidRequestError(ValueError):
    """Raised for caller misuse: non-positive counts, bad resolutions, malformed routes."""
