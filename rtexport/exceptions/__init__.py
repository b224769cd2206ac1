"""Exceptions raised by rtexport."""

from rtexport.exceptions.domain import (
    AnonymizationError,
    AssociationError,
    ConfigError,
    DicomError,
    ExportCancelledError,
    QueryError,
    ReceiverError,
    RtExportError,
    StorageError,
    TransferError,
)

__all__ = [
    "RtExportError",
    "ConfigError",
    "DicomError",
    "AssociationError",
    "QueryError",
    "TransferError",
    "StorageError",
    "ReceiverError",
    "AnonymizationError",
    "ExportCancelledError",
]
