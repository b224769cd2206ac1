"""Hierarchical C-FIND against the remote archive: patient -> study -> series -> instance."""

from collections.abc import Iterable

from rtexport.exceptions import AssociationError, QueryError
from rtexport.services.dicom.client import DicomClient
from rtexport.services.dicom.models import (
    DicomNode,
    ImageQuery,
    InstanceRecord,
    SeriesQuery,
    SeriesRecord,
    StudyQuery,
    StudyRecord,
)
from rtexport.utils.logger import logger


class QueryCoordinator:
    """Materializes a patient's studies, series and instances as records.

    One association is opened per study or series queried. A study or series
    returning nothing is not an error.
    """

    def __init__(self, client: DicomClient, peer: DicomNode, timeout: float = 30.0):
        self.client = client
        self.peer = peer
        self.timeout = timeout

    async def find_studies(self, patient_id: str) -> list[StudyRecord]:
        """Find every study of a patient.

        A connection or query failure yields an empty list; the caller skips
        the patient.
        """
        try:
            studies = await self.client.find_studies(
                StudyQuery(patient_id=patient_id), self.peer, timeout=self.timeout
            )
        except (AssociationError, QueryError) as e:
            logger.warning(f"Study query for patient {patient_id} failed: {e}")
            return []

        unique: dict[str, StudyRecord] = {}
        for study in studies:
            unique.setdefault(study.study_instance_uid, study)
        return list(unique.values())

    async def find_series(self, studies: Iterable[StudyRecord]) -> list[SeriesRecord]:
        """Find all series of the given studies, deduplicated by SeriesInstanceUID."""
        unique: dict[str, SeriesRecord] = {}
        for study in studies:
            try:
                series_list = await self.client.find_series(
                    SeriesQuery(study_instance_uid=study.study_instance_uid),
                    self.peer,
                    timeout=self.timeout,
                )
            except (AssociationError, QueryError) as e:
                logger.warning(f"Series query for study {study.study_instance_uid} failed: {e}")
                continue
            for series in series_list:
                unique.setdefault(series.series_instance_uid, series)
        return list(unique.values())

    async def find_instances(self, series: Iterable[SeriesRecord]) -> list[InstanceRecord]:
        """Find all instances of the given series, in archive order."""
        instances: list[InstanceRecord] = []
        for s in series:
            try:
                found = await self.client.find_images(
                    ImageQuery(
                        study_instance_uid=s.study_instance_uid,
                        series_instance_uid=s.series_instance_uid,
                    ),
                    self.peer,
                    timeout=self.timeout,
                )
            except (AssociationError, QueryError) as e:
                logger.warning(f"Instance query for series {s.series_instance_uid} failed: {e}")
                continue
            for instance in found:
                if instance.modality is None and s.modality:
                    instance = instance.model_copy(update={"modality": s.modality})
                instances.append(instance)
        return instances
