"""Export of selected examinations and their RT objects from a remote archive."""

from rtexport.services.export.models import (
    DataType,
    ExaminationReference,
    ExportOptions,
    ExportOutcome,
    ExportProgress,
    ExportReport,
    ExportRequest,
    ImageTarget,
    PendingTransfer,
    PlanReference,
    RegistrationLink,
    SeriesTarget,
)
from rtexport.services.export.session import CancellationToken, ExportSession, RouteTable

__all__ = [
    "DataType",
    "ExaminationReference",
    "ExportOptions",
    "ExportOutcome",
    "ExportProgress",
    "ExportReport",
    "ExportRequest",
    "ImageTarget",
    "PendingTransfer",
    "PlanReference",
    "RegistrationLink",
    "SeriesTarget",
    "CancellationToken",
    "ExportSession",
    "RouteTable",
]
