"""Tests for ExportPlanner."""

from pathlib import Path

from rtexport.services.export.models import DataType, ImageTarget, ResolvedSeries, SeriesTarget
from rtexport.services.export.planner import ExportPlanner
from rtexport.services.export.resolver import ResolvedReferences
from rtexport.utils.naming import examination_root

from tests.utils import STUDY_UID, instance, series


def planner(export_root: Path) -> ExportPlanner:
    return ExportPlanner(examination_root(export_root, "12345", "C1", "CT 1"), "12345")


class TestExportPlanner:
    """Tests for transfer planning."""

    def test_structure_series_transfer(self, export_root: Path) -> None:
        """Test a whole structure series becomes one series-level transfer."""
        resolved = ResolvedReferences(
            structures=[ResolvedSeries(series=series("SE-RS", "RTSTRUCT"), data_type=DataType.STRUCTURE)]
        )

        pending = planner(export_root).collect(resolved)

        assert len(pending) == 1
        transfer = pending[0]
        assert transfer.target == SeriesTarget(study_instance_uid=STUDY_UID, series_instance_uid="SE-RS")
        assert transfer.destination == export_root / "12345" / "C1" / "CT 1"
        assert transfer.label == "12345: Structure"
        assert transfer.correlation_key == "SE-RS"

    def test_image_level_transfers(self, export_root: Path) -> None:
        dose_series = series("SE-DOSE", "RTDOSE")
        resolved = ResolvedReferences(
            doses=[
                ResolvedSeries(
                    series=dose_series,
                    data_type=DataType.DOSE,
                    instances=[instance("D1", "SE-DOSE"), instance("D2", "SE-DOSE")],
                )
            ]
        )

        pending = planner(export_root).collect(resolved)

        assert [p.correlation_key for p in pending] == ["D1", "D2"]
        assert all(isinstance(p.target, ImageTarget) for p in pending)
        assert pending[0].label == "12345: Dose"

    def test_duplicate_instance_planned_once(self, export_root: Path) -> None:
        dose_series = series("SE-DOSE", "RTDOSE")
        d1 = instance("D1", "SE-DOSE")
        resolved = ResolvedReferences(
            doses=[
                ResolvedSeries(series=dose_series, data_type=DataType.DOSE, instances=[d1]),
                ResolvedSeries(series=dose_series, data_type=DataType.DOSE, instances=[d1]),
            ]
        )

        assert len(planner(export_root).collect(resolved)) == 1

    def test_duplicate_series_planned_once(self, export_root: Path) -> None:
        ct = series("SE-CT", "CT")
        resolved = ResolvedReferences(
            examination=[ResolvedSeries(series=ct, data_type=DataType.EXAMINATION)],
            registered_images=[
                ResolvedSeries(series=ct, data_type=DataType.REGISTERED_IMAGE, source_exam_name="CT 1")
            ],
        )

        pending = planner(export_root).collect(resolved)

        assert len(pending) == 1
        assert pending[0].data_type == DataType.EXAMINATION

    def test_instance_of_queued_series_skipped(self, export_root: Path) -> None:
        reg = series("SE-REG", "REG")
        resolved = ResolvedReferences(
            registrations=[
                ResolvedSeries(series=reg, data_type=DataType.REGISTRATION),
                ResolvedSeries(
                    series=reg, data_type=DataType.REGISTRATION, instances=[instance("REG1", "SE-REG")]
                ),
            ]
        )

        pending = planner(export_root).collect(resolved)

        assert [p.correlation_key for p in pending] == ["SE-REG"]

    def test_registered_image_destination(self, export_root: Path) -> None:
        resolved = ResolvedReferences(
            registered_images=[
                ResolvedSeries(
                    series=series("SE-MR", "MR"),
                    data_type=DataType.REGISTERED_IMAGE,
                    source_exam_name="MR: T1",
                )
            ]
        )

        transfer = planner(export_root).collect(resolved)[0]

        exam_root = export_root / "12345" / "C1" / "CT 1"
        assert transfer.destination == exam_root / "RegisteredImages" / "MR_ T1"
        assert transfer.label == "12345: Registered Image (MR: T1)"

    def test_transfer_order_follows_data_types(self, export_root: Path) -> None:
        resolved = ResolvedReferences(
            examination=[ResolvedSeries(series=series("SE-CT", "CT"), data_type=DataType.EXAMINATION)],
            structures=[ResolvedSeries(series=series("SE-RS", "RTSTRUCT"), data_type=DataType.STRUCTURE)],
            plans=[ResolvedSeries(series=series("SE-PLAN", "RTPLAN"), data_type=DataType.PLAN)],
        )

        pending = planner(export_root).collect(resolved)

        assert [p.data_type for p in pending] == [DataType.EXAMINATION, DataType.STRUCTURE, DataType.PLAN]

    def test_nothing_resolved(self, export_root: Path) -> None:
        assert planner(export_root).collect(ResolvedReferences()) == []
