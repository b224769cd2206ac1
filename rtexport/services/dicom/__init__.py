"""DICOM client for query-retrieve operations."""

from rtexport.services.dicom.client import DicomClient
from rtexport.services.dicom.models import (
    DicomNode,
    ImageQuery,
    InstanceRecord,
    QueryRetrieveLevel,
    RetrieveResult,
    RetrieveStatus,
    SeriesQuery,
    SeriesRecord,
    StudyQuery,
    StudyRecord,
)

__all__ = [
    "DicomClient",
    "DicomNode",
    "QueryRetrieveLevel",
    "StudyQuery",
    "StudyRecord",
    "SeriesQuery",
    "SeriesRecord",
    "ImageQuery",
    "InstanceRecord",
    "RetrieveResult",
    "RetrieveStatus",
]
