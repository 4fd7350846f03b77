"""
Error taxonomy for the monitoring core.

Every expected failure has its own type so callers can tell "you may not see
this" apart from "this does not exist". A transport layer maps `code` onto its
own status vocabulary.
"""


class MonitoringError(Exception):
    """Base class for every failure reported by the monitoring core."""

    code: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(MonitoringError):
    """Unknown bed or unknown target user."""

    code = "not_found"


class AlreadyExistsError(MonitoringError):
    """Duplicate bed id on add."""

    code = "already_exists"


class UnauthorizedError(MonitoringError):
    """No caller identity was supplied."""

    code = "unauthorized"


class ForbiddenError(MonitoringError):
    """Caller identity present but clearance is insufficient."""

    code = "forbidden"


class InvalidInputError(MonitoringError):
    """Missing required fields or malformed enumeration values."""

    code = "invalid_input"


class SourceUnavailableError(MonitoringError):
    """Time-series source read or write failed."""

    code = "source_unavailable"


class InternalFaultError(MonitoringError):
    """
    Unexpected failure.

    The public message stays generic; the detailed cause is kept on `detail`
    for logging only.
    """

    code = "internal_fault"
    public_message = "Internal server error"

    def __init__(self, detail: str) -> None:
        super().__init__(self.public_message)
        self.detail = detail
