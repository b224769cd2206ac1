"""Turns resolved references into an ordered, deduplicated list of transfers."""

from pathlib import Path

from rtexport.services.export.models import (
    DataType,
    ImageTarget,
    PendingTransfer,
    ResolvedSeries,
    SeriesTarget,
)
from rtexport.services.export.resolver import ResolvedReferences
from rtexport.utils.naming import UNKNOWN_FOLDER, sanitize_folder_name

REGISTERED_IMAGES_FOLDER = "RegisteredImages"


class ExportPlanner:
    """Builds the PendingTransfer list of one export request.

    RT objects are routed to the examination root; the receiver adds the
    modality subfolder (Structure, Plan, Dose, Registrations) when it writes
    them. Registered source images get ``RegisteredImages/<exam name>``.
    """

    def __init__(self, exam_root: Path, patient_folder: str):
        """Initialize the planner.

        Args:
            exam_root: ``<export root>/<patient>/<course>/<exam>``
            patient_folder: Patient folder name, used in progress labels
        """
        self.exam_root = exam_root
        self.patient_folder = patient_folder

    def destination_for(self, item: ResolvedSeries) -> Path:
        if item.data_type == DataType.REGISTERED_IMAGE:
            source_name = sanitize_folder_name(item.source_exam_name or UNKNOWN_FOLDER)
            return self.exam_root / REGISTERED_IMAGES_FOLDER / source_name
        return self.exam_root

    def label_for(self, item: ResolvedSeries) -> str:
        if item.data_type == DataType.REGISTERED_IMAGE and item.source_exam_name:
            return f"{self.patient_folder}: {item.data_type.value} ({item.source_exam_name})"
        return f"{self.patient_folder}: {item.data_type.value}"

    def collect(self, resolved: ResolvedReferences) -> list[PendingTransfer]:
        """Flatten ``resolved`` into transfers, each series or instance at most once."""
        pending: list[PendingTransfer] = []
        queued_series: set[str] = set()
        queued_instances: set[str] = set()

        for item in resolved.all():
            series = item.series
            destination = self.destination_for(item)
            label = self.label_for(item)

            if item.instances is None:
                if series.series_instance_uid in queued_series:
                    continue
                queued_series.add(series.series_instance_uid)
                pending.append(
                    PendingTransfer(
                        target=SeriesTarget(
                            study_instance_uid=series.study_instance_uid,
                            series_instance_uid=series.series_instance_uid,
                        ),
                        destination=destination,
                        data_type=item.data_type,
                        label=label,
                    )
                )
                continue

            for instance in item.instances:
                if (
                    instance.sop_instance_uid in queued_instances
                    or instance.series_instance_uid in queued_series
                ):
                    continue
                queued_instances.add(instance.sop_instance_uid)
                pending.append(
                    PendingTransfer(
                        target=ImageTarget(
                            study_instance_uid=instance.study_instance_uid,
                            series_instance_uid=instance.series_instance_uid,
                            sop_instance_uid=instance.sop_instance_uid,
                        ),
                        destination=destination,
                        data_type=item.data_type,
                        label=label,
                    )
                )

        return pending
