class GeoTourError(Exception):
    """Base class for all pipeline errors."""

    pass


class ValidationError(GeoTourError):
    """Input file rejected before any work was scheduled."""

    pass


class ExtractionFailure(GeoTourError):
    """Geolocation could not be derived from a media unit.

    ``transient`` marks failures worth retrying (timeouts, storage hiccups);
    everything else is permanent for that unit.
    """

    def __init__(self, reason: str, transient: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.transient = transient


class StorageFailure(GeoTourError):
    """Object store read or write failed."""

    pass


class PersistenceConflict(GeoTourError):
    """A store transaction could not be applied atomically."""

    pass


class CancellationRequested(GeoTourError):
    """A job was cancelled by its owner."""

    pass


class TourBusy(GeoTourError):
    """The tour already has a job in flight."""

    pass


class PermissionDenied(GeoTourError):
    """Requester is not allowed to modify the resource."""

    pass


class NotFound(GeoTourError):
    """Requested tour or job does not exist."""

    pass


class InvalidTransition(GeoTourError):
    """Job state change not permitted by the state machine."""

    pass
