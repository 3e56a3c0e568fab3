from typing import Optional


class RecordExportError(Exception):
    """Base class for errors raised by the export service."""


class FieldDetectionError(RecordExportError):
    """Field detection failed as a whole. No partial result is available."""

    def __init__(self, entity_type: str, message: str):
        self.entity_type = entity_type
        super().__init__(f"Field detection failed for '{entity_type}': {message}")


class ExportJobNotFoundError(RecordExportError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Export job '{job_id}' not found")


class UnsupportedExportFormatError(RecordExportError):
    def __init__(self, export_format: str):
        self.export_format = export_format
        super().__init__(f"Unsupported export format: {export_format}")


class PlatformAPIError(RecordExportError):
    """Upstream platform returned an error response or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
