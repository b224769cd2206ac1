"""
Domain exceptions for the export services.

These exceptions are raised by the DICOM operations layer, the storage
handler and the export services. The orchestrator decides which of them end
an export item and which of them end the whole run.
"""


class RtExportError(Exception):
    """Base exception for all rtexport-specific errors."""

    pass


class ConfigError(RtExportError):
    """Raised when the export configuration is unusable."""

    pass


# DICOM network exceptions
class DicomError(RtExportError):
    """Base exception for DICOM-related errors."""

    pass


class AssociationError(DicomError):
    """Raised when an association with a remote node cannot be established."""

    def __init__(self, aet: str | None = None, host: str | None = None, port: int | None = None):
        if aet:
            super().__init__(f"Failed to establish DICOM association with {aet}@{host}:{port}")
        else:
            super().__init__("Failed to establish DICOM association")


class QueryError(DicomError):
    """Raised when a C-FIND cannot be completed."""

    pass


class TransferError(DicomError):
    """Raised when a C-MOVE cannot be completed."""

    pass


class StorageError(DicomError):
    """Raised when a received instance cannot be written to disk."""

    pass


class ReceiverError(DicomError):
    """Raised when the local storage SCP cannot be started."""

    pass


# Anonymization exceptions
class AnonymizationError(RtExportError):
    """Raised when the anonymization key file cannot be read or written."""

    pass


# Control flow
class ExportCancelledError(RtExportError):
    """Raised when the export was cancelled by the caller."""

    def __init__(self, detail: str = "Export was cancelled"):
        super().__init__(detail)
