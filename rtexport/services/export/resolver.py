"""Cross-referencing of an examination with its dependent RT objects.

Given the primary examination and every series the archive holds for the
patient, decide which structure sets, plans, doses, registrations and
registered source images belong to it. Matching is done on UIDs known from
the local patient database and on frame-of-reference equality.
"""

from collections.abc import Iterable, Sequence
from typing import Protocol

from pydantic import BaseModel, Field

from rtexport.services.dicom.models import InstanceRecord, SeriesRecord
from rtexport.services.export.models import (
    DataType,
    ExaminationReference,
    ExportOptions,
    ExportRequest,
    RegistrationLink,
    ResolvedSeries,
)
from rtexport.utils.logger import logger

REGISTRATION_MODALITIES = frozenset({"REG", "SPATIAL REGISTRATION"})


class InstanceLookup(Protocol):
    async def find_instances(self, series: Iterable[SeriesRecord]) -> list[InstanceRecord]: ...


class ResolvedReferences(BaseModel):
    """Qualifying series of one export request, partitioned by data type."""

    examination: list[ResolvedSeries] = Field(default_factory=list)
    structures: list[ResolvedSeries] = Field(default_factory=list)
    plans: list[ResolvedSeries] = Field(default_factory=list)
    doses: list[ResolvedSeries] = Field(default_factory=list)
    registrations: list[ResolvedSeries] = Field(default_factory=list)
    registered_images: list[ResolvedSeries] = Field(default_factory=list)

    def all(self) -> list[ResolvedSeries]:
        """Every resolved series, in transfer order."""
        return [
            *self.examination,
            *self.structures,
            *self.plans,
            *self.doses,
            *self.registrations,
            *self.registered_images,
        ]

    def is_empty(self) -> bool:
        return not self.all()


def normalize_modality(modality: str | None) -> str:
    value = (modality or "").strip().upper()
    return "PT" if value == "PET" else value


def _of_modality(series: Iterable[SeriesRecord], *modalities: str) -> list[SeriesRecord]:
    wanted = {normalize_modality(m) for m in modalities}
    return [s for s in series if normalize_modality(s.modality) in wanted]


def _unique_by_sop(instances: Iterable[InstanceRecord]) -> list[InstanceRecord]:
    unique: dict[str, InstanceRecord] = {}
    for instance in instances:
        unique.setdefault(instance.sop_instance_uid, instance)
    return list(unique.values())


def _narrow(
    series: Sequence[SeriesRecord],
    instances: Sequence[InstanceRecord],
    wanted_sop_uids: set[str],
    data_type: DataType,
    image_level: bool = False,
) -> list[ResolvedSeries]:
    """Keep only series holding wanted instances.

    A series whose instances are all wanted is transferred whole, unless
    ``image_level`` forces per-instance transfers.
    """
    resolved: list[ResolvedSeries] = []
    for s in series:
        in_series = [i for i in instances if i.series_instance_uid == s.series_instance_uid]
        selected = _unique_by_sop(i for i in in_series if i.sop_instance_uid in wanted_sop_uids)
        if not selected:
            continue
        whole_series = {i.sop_instance_uid for i in in_series} <= wanted_sop_uids
        if whole_series and not image_level:
            resolved.append(ResolvedSeries(series=s, data_type=data_type))
        else:
            resolved.append(ResolvedSeries(series=s, data_type=data_type, instances=selected))
    return resolved


class CrossReferenceResolver:
    """Determines which of a patient's series belong to one examination."""

    def __init__(self, lookup: InstanceLookup, options: ExportOptions):
        """Initialize the resolver.

        Args:
            lookup: Instance-level query source (normally the QueryCoordinator)
            options: Export toggles
        """
        self.lookup = lookup
        self.options = options

    async def resolve(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> ResolvedReferences:
        """Resolve every qualifying series for ``request``."""
        resolved = ResolvedReferences()

        if self.options.export_examination:
            resolved.examination = self._resolve_examination(request, series)
        if self.options.export_structure:
            resolved.structures = await self._resolve_structures(request, series)
        if self.options.export_plan:
            resolved.plans = self._resolve_plans(request, series)
        if self.options.export_dose:
            resolved.doses = await self._resolve_doses(request, series)
        if self.options.export_registrations:
            registrations, images = await self._resolve_registrations(request, series)
            resolved.registrations = registrations
            resolved.registered_images = images

        logger.info(
            f"Resolved {request.mrn}/{request.exam_name}: "
            f"{len(resolved.examination)} exam, {len(resolved.structures)} structure, "
            f"{len(resolved.plans)} plan, {len(resolved.doses)} dose, "
            f"{len(resolved.registrations)} registration, "
            f"{len(resolved.registered_images)} registered image series"
        )
        return resolved

    def _resolve_examination(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> list[ResolvedSeries]:
        if not request.series_instance_uid:
            logger.warning(f"Examination {request.exam_name} has no SeriesInstanceUID")
            return []
        for s in series:
            if s.series_instance_uid == request.series_instance_uid:
                return [ResolvedSeries(series=s, data_type=DataType.EXAMINATION)]
        logger.warning(
            f"Examination series {request.series_instance_uid} not found on the archive"
        )
        return []

    async def _resolve_structures(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> list[ResolvedSeries]:
        candidates = _of_modality(series, "RTSTRUCT")
        if not candidates:
            return []

        structure_set_uid = request.effective_structure_set_uid
        if not structure_set_uid:
            return [ResolvedSeries(series=s, data_type=DataType.STRUCTURE) for s in candidates]

        instances = await self.lookup.find_instances(candidates)
        resolved = _narrow(candidates, instances, {structure_set_uid}, DataType.STRUCTURE)
        if not resolved:
            logger.warning(f"Structure set {structure_set_uid} not found on the archive")
        return resolved

    def _resolve_plans(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> list[ResolvedSeries]:
        plan_series_uids = request.plan_series_uids
        return [
            ResolvedSeries(series=s, data_type=DataType.PLAN)
            for s in _of_modality(series, "RTPLAN")
            if s.series_instance_uid in plan_series_uids
        ]

    async def _resolve_doses(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> list[ResolvedSeries]:
        candidates = _of_modality(series, "RTDOSE")
        dose_uids = request.dose_sop_uids
        if not candidates:
            return []
        if not dose_uids:
            logger.debug(f"No plan of {request.exam_name} references a dose, skipping doses")
            return []

        instances = await self.lookup.find_instances(candidates)
        return _narrow(candidates, instances, dose_uids, DataType.DOSE, image_level=True)

    def _source_allowed(self, exam: ExaminationReference) -> bool:
        allowed = {normalize_modality(m) for m in self.options.allowed_registration_modalities()}
        if normalize_modality(exam.modality) not in allowed:
            return False
        # CBCT detection is a name heuristic applied on top of the modality
        return not exam.is_cbct or self.options.registration_cbct

    def qualifying_links(
        self, request: ExportRequest
    ) -> list[tuple[RegistrationLink, list[ExaminationReference]]]:
        """Registration links targeting the primary examination, with their source exams."""
        primary_for = request.frame_of_reference_uid
        if not primary_for:
            logger.warning(
                f"Examination {request.exam_name} has no frame of reference, skipping registrations"
            )
            return []

        qualifying: list[tuple[RegistrationLink, list[ExaminationReference]]] = []
        for link in request.registrations:
            if not link.is_usable or link.to_frame_of_reference != primary_for:
                continue
            sources = [
                exam
                for exam in request.examinations
                if exam.frame_of_reference_uid == link.from_frame_of_reference
                and self._source_allowed(exam)
            ]
            if sources:
                qualifying.append((link, sources))
            else:
                logger.debug(f"Registration {link.name} has no allowed source examination")
        return qualifying

    async def _resolve_registrations(
        self, request: ExportRequest, series: Sequence[SeriesRecord]
    ) -> tuple[list[ResolvedSeries], list[ResolvedSeries]]:
        qualifying = self.qualifying_links(request)
        if not qualifying:
            return [], []

        registrations: list[ResolvedSeries] = []
        candidates = _of_modality(series, *REGISTRATION_MODALITIES)
        registration_uids = {
            link.registration_uid for link, _ in qualifying if link.registration_uid
        }
        if candidates and registration_uids:
            instances = await self.lookup.find_instances(candidates)
            registrations = _narrow(candidates, instances, registration_uids, DataType.REGISTRATION)
        elif candidates:
            registrations = [
                ResolvedSeries(series=s, data_type=DataType.REGISTRATION) for s in candidates
            ]

        series_by_uid = {s.series_instance_uid: s for s in series}
        seen: set[str] = {request.series_instance_uid} if request.series_instance_uid else set()
        images: list[ResolvedSeries] = []
        for link, sources in qualifying:
            for exam in sources:
                uid = exam.series_instance_uid
                if not uid or uid in seen:
                    continue
                source_series = series_by_uid.get(uid)
                if source_series is None:
                    logger.warning(
                        f"Source image {exam.exam_name} of registration {link.name} "
                        "not found on the archive"
                    )
                    continue
                seen.add(uid)
                images.append(
                    ResolvedSeries(
                        series=source_series,
                        data_type=DataType.REGISTERED_IMAGE,
                        source_exam_name=exam.exam_name,
                    )
                )

        return registrations, images
