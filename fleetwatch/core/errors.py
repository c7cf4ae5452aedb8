class FleetwatchError(Exception):
    """Base class for errors raised by fleetwatch."""


class ValidationError(FleetwatchError):
    """Bad query input (date, unit, timezone, group dimension).

    Raised before the telemetry store is touched.
    """


class SourceUnavailableError(FleetwatchError):
    """The telemetry store could not be queried or written."""
