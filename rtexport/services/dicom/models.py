"""Pydantic models exchanged with the Query/Retrieve layer."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DicomNode(BaseModel):
    """A remote application entity."""

    aet: str
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.aet}@{self.host}:{self.port}"


class AssociationConfig(BaseModel):
    """Everything needed to open one association."""

    calling_aet: str
    called_aet: str
    peer_host: str
    peer_port: int
    max_pdu: int = 16384
    timeout: float = 30.0


class QueryRetrieveLevel(str, Enum):
    STUDY = "STUDY"
    SERIES = "SERIES"
    IMAGE = "IMAGE"


# C-FIND matching keys; None means "return this attribute"


class StudyQuery(BaseModel):
    patient_id: str | None = None
    study_instance_uid: str | None = None


class SeriesQuery(BaseModel):
    study_instance_uid: str
    series_instance_uid: str | None = None
    modality: str | None = None


class ImageQuery(BaseModel):
    study_instance_uid: str
    series_instance_uid: str
    sop_instance_uid: str | None = None


# C-FIND matches. Frozen: the same record is shared by the resolver and planner.


class StudyRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    study_instance_uid: str
    patient_id: str | None = None
    study_date: str | None = None
    study_description: str | None = None
    modalities_in_study: str | None = None


class SeriesRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    study_instance_uid: str
    series_instance_uid: str
    modality: str | None = None
    series_number: int | None = None
    series_description: str | None = None
    number_of_series_related_instances: int | None = None


class InstanceRecord(BaseModel):
    """One SOP instance; ``modality`` is filled from the series when the archive omits it."""

    model_config = ConfigDict(frozen=True)

    study_instance_uid: str
    series_instance_uid: str
    sop_instance_uid: str
    sop_class_uid: str | None = None
    modality: str | None = None


class RetrieveRequest(BaseModel):
    """Scope of one C-MOVE: a whole series or a single instance."""

    level: QueryRetrieveLevel
    study_instance_uid: str
    series_instance_uid: str | None = None
    sop_instance_uid: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Identifier attributes keyed by DICOM keyword."""
        identifier: dict[str, Any] = {
            "QueryRetrieveLevel": self.level.value,
            "StudyInstanceUID": self.study_instance_uid,
        }
        if self.series_instance_uid:
            identifier["SeriesInstanceUID"] = self.series_instance_uid
        if self.sop_instance_uid:
            identifier["SOPInstanceUID"] = self.sop_instance_uid
        return identifier


class RetrieveStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


class RetrieveResult(BaseModel):
    """Final status and sub-operation counters of a C-MOVE."""

    status: RetrieveStatus = RetrieveStatus.PENDING
    status_code: int | None = None
    num_remaining: int = 0
    num_completed: int = 0
    num_failed: int = 0
    num_warning: int = 0
    failed_sop_instances: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Success, or success with warnings (some sub-operations failed)."""
        return self.status in (RetrieveStatus.SUCCESS, RetrieveStatus.WARNING)
