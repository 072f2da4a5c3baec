"""Drive error taxonomy.

Repository and store code raises these; DriveSession converts them into
OperationResult at its boundary so callers see a single failure shape.
"""


class DriveError(Exception):
    """Base class for all drive failures."""

    code = "drive_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class UnauthenticatedError(DriveError):
    code = "unauthenticated"

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class ValidationError(DriveError):
    code = "invalid_input"


class RecordNotFoundError(DriveError):
    code = "not_found"

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind.capitalize()} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class FolderCycleError(ValidationError):
    code = "folder_cycle"


class RemoteWriteError(DriveError):
    code = "remote_write_failed"


class RemoteReadError(DriveError):
    code = "remote_read_failed"


class RemoteTimeoutError(RemoteWriteError):
    code = "remote_timeout"


class PartialUploadError(RemoteWriteError):
    """Blob was written but its metadata record was not."""

    code = "partial_upload"

    def __init__(self, blob_id: str, message: str = "", compensated: bool = False):
        super().__init__(message or f"Metadata write failed after blob {blob_id} was stored")
        self.blob_id = blob_id
        self.compensated = compensated


class BulkOperationError(DriveError):
    code = "bulk_partial_failure"

    def __init__(self, failed_ids: list[str], message: str = ""):
        super().__init__(message or f"{len(failed_ids)} item(s) could not be deleted")
        self.failed_ids = list(failed_ids)
