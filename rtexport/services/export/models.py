"""Pydantic models for the export pipeline."""

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from rtexport.services.dicom.models import InstanceRecord, SeriesRecord


class DataType(str, Enum):
    """Kind of object a transfer brings in."""

    EXAMINATION = "Examination"
    STRUCTURE = "Structure"
    PLAN = "Plan"
    DOSE = "Dose"
    REGISTRATION = "Registration"
    REGISTERED_IMAGE = "Registered Image"


class ExaminationReference(BaseModel):
    """An image series known from the local patient database."""

    model_config = ConfigDict(frozen=True)

    exam_name: str
    study_instance_uid: str | None = None
    series_instance_uid: str | None = None
    frame_of_reference_uid: str | None = None
    modality: str | None = None

    @property
    def is_cbct(self) -> bool:
        """Heuristic: CBCT examinations carry "cbct" in their name."""
        return "cbct" in self.exam_name.lower()


class PlanReference(BaseModel):
    """A treatment plan referencing the exported examination."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    series_instance_uid: str | None = None
    sop_instance_uid: str | None = None
    dose_sop_instance_uids: tuple[str, ...] = ()
    structure_set_uid: str | None = None


class RegistrationLink(BaseModel):
    """A spatial registration between two frames of reference."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    registration_uid: str | None = None
    from_frame_of_reference: str | None = None
    to_frame_of_reference: str | None = None

    @property
    def is_usable(self) -> bool:
        return bool(self.from_frame_of_reference) and bool(self.to_frame_of_reference)


class ExportRequest(BaseModel):
    """One examination selected for export, with everything needed to cross-reference it."""

    model_config = ConfigDict(frozen=True)

    mrn: str
    patient_name: str = ""
    course_name: str = ""
    exam_name: str
    study_instance_uid: str | None = None
    series_instance_uid: str | None = None
    frame_of_reference_uid: str | None = None
    structure_set_uid: str | None = None
    plans: tuple[PlanReference, ...] = ()
    examinations: tuple[ExaminationReference, ...] = ()
    registrations: tuple[RegistrationLink, ...] = ()

    @property
    def effective_structure_set_uid(self) -> str | None:
        """Structure set UID of the request, or the first one a plan references."""
        if self.structure_set_uid:
            return self.structure_set_uid
        for plan in self.plans:
            if plan.structure_set_uid:
                return plan.structure_set_uid
        return None

    @property
    def plan_series_uids(self) -> set[str]:
        return {p.series_instance_uid for p in self.plans if p.series_instance_uid}

    @property
    def dose_sop_uids(self) -> set[str]:
        return {uid for p in self.plans for uid in p.dose_sop_instance_uids if uid}


class ExportOptions(BaseModel):
    """Per-data-type and per-modality export toggles."""

    export_examination: bool = True
    export_structure: bool = True
    export_plan: bool = True
    export_dose: bool = True
    export_registrations: bool = False
    registration_ct: bool = True
    registration_mr: bool = True
    registration_pet: bool = True
    registration_cbct: bool = False

    def any_selected(self) -> bool:
        return any(
            (
                self.export_examination,
                self.export_structure,
                self.export_plan,
                self.export_dose,
                self.export_registrations,
            )
        )

    def allowed_registration_modalities(self) -> set[str]:
        """Modalities whose examinations may be exported as registered images."""
        allowed: set[str] = set()
        if self.registration_ct:
            allowed.add("CT")
        if self.registration_mr:
            allowed.add("MR")
        if self.registration_pet:
            allowed.update({"PT", "PET"})
        return allowed


class SeriesTarget(BaseModel):
    """Series-level retrieve scope."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["series"] = "series"
    study_instance_uid: str
    series_instance_uid: str

    @property
    def correlation_key(self) -> str:
        return self.series_instance_uid


class ImageTarget(BaseModel):
    """Image-level retrieve scope."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    study_instance_uid: str
    series_instance_uid: str
    sop_instance_uid: str

    @property
    def correlation_key(self) -> str:
        return self.sop_instance_uid


TransferTarget = Annotated[SeriesTarget | ImageTarget, Field(discriminator="kind")]


class PendingTransfer(BaseModel):
    """One C-MOVE to perform, with where its instances must land."""

    model_config = ConfigDict(frozen=True)

    target: TransferTarget
    destination: Path
    data_type: DataType
    label: str

    @property
    def correlation_key(self) -> str:
        return self.target.correlation_key


class ResolvedSeries(BaseModel):
    """A qualifying series, optionally narrowed to some of its instances."""

    series: SeriesRecord
    data_type: DataType
    instances: list[InstanceRecord] | None = None
    source_exam_name: str | None = None


class ExportProgress(BaseModel):
    """Progress snapshot handed to the UI callback."""

    overall_percent: int = 0
    item_percent: int = 0  # -1 means indeterminate
    status: str = ""
    detail: str = ""


class ExportOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ExportReport(BaseModel):
    """Summary of one export run."""

    outcome: ExportOutcome = ExportOutcome.COMPLETED
    items_total: int = 0
    items_exported: int = 0
    items_skipped: int = 0
    transfers_attempted: int = 0
    transfers_failed: int = 0
    error: str | None = None
