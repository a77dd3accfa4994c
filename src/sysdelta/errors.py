"""Exception hierarchy for sysdelta."""


class SysdeltaError(Exception):
    """Base class for all sysdelta errors."""


class AuthorizationError(SysdeltaError):
    """Caller did not present a valid credential."""


class ValidationError(SysdeltaError):
    """A request is missing a required field."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"Missing required field: {field}")


class NotFoundError(SysdeltaError):
    """No snapshot exists under the requested id."""

    def __init__(self, snapshot_id: str) -> None:
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class CollectionError(SysdeltaError):
    """A required telemetry subtree is absent or could not be read."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"Telemetry is missing required section: {field}")


class MalformedSnapshotError(SysdeltaError):
    """A snapshot lacks a section the diff engine requires."""

    def __init__(self, section: str, message: str | None = None) -> None:
        self.section = section
        super().__init__(message or f"Snapshot is missing required section: {section}")


class StorageError(SysdeltaError):
    """Snapshot store I/O failed."""


class TransportError(SysdeltaError):
    """Submitting to or reading from the remote store failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
